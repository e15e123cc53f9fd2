from pydantic import BaseModel, ConfigDict


class UserFields(BaseModel):
    # Users are built from the verified token, never from the body.
    model_config = ConfigDict(extra="forbid")
