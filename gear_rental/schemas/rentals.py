from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict


class RentalFields(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    start: Optional[date] = None
    end: Optional[date] = None
    name: Optional[str] = None
