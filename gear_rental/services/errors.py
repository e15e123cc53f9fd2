from __future__ import annotations


BAD_KEYS_MESSAGE = "Request object keys are bad. Check the API doc for required keys."
INVALID_VALUES_MESSAGE = "Request object values are invalid. Check the API doc for value formats."
MALFORMED_JSON_MESSAGE = "Problem with JSON format in body"
RENTAL_DATES_MESSAGE = "The rental end date must be on or after its start date."
GEAR_NOT_FREE_MESSAGE = "This gear is already rented."
GEAR_NOT_RELATED_MESSAGE = "The gear is not on this rental"
RENTAL_NOT_FOUND_MESSAGE = "This rental does not exist."
GEAR_NOT_FOUND_MESSAGE = "This gear does not exist."


class GearRentalError(Exception):
    """Base error; rendered to clients as ``{"Error": message}``."""

    status_code = 500
    message = "The server could not complete the request."

    def __init__(self, message: str | None = None, *, headers: dict[str, str] | None = None):
        self.message = message or type(self).message
        self.headers = dict(headers or {})
        super().__init__(self.message)


class BadRequestError(GearRentalError):
    status_code = 400
    message = BAD_KEYS_MESSAGE


class NotAcceptableError(GearRentalError):
    status_code = 406
    message = "Server will send back JSON data. Accept header indicates you cannot accept this."


class UnsupportedMediaTypeError(GearRentalError):
    status_code = 415
    message = (
        "Server can only handle JSON post, put, and patch requests. "
        "Please check the request body and content-type header."
    )


class UnauthorizedError(GearRentalError):
    status_code = 401
    message = "The request requires a JWT but is either not provided or is invalid."


class ForbiddenError(GearRentalError):
    status_code = 403
    message = "JWT provided does not match user of this rental"


class NotFoundError(GearRentalError):
    status_code = 404
    message = "The requested resource does not exist."


class ConflictError(GearRentalError):
    # Domain preconditions (gear not free, gear not on rental) keep the 400 status.
    status_code = 400
    message = "The request conflicts with the current state of the resource."


class VersionConflictError(GearRentalError):
    status_code = 409
    message = "The resource was changed by another request. Re-read it and try again."


class MethodNotSupportedError(GearRentalError):
    status_code = 405
    message = "Method not allowed on this resource."

    def __init__(self, allow: list[str] | tuple[str, ...]):
        super().__init__(headers={"Allow": ", ".join(allow)})
        self.allow = tuple(allow)


class BackendError(GearRentalError):
    status_code = 500
    message = "The server could not complete the request."


class StorageError(BackendError):
    message = "The datastore could not complete the request."


class IdentityProviderError(BackendError):
    message = "The identity provider could not complete the request."
