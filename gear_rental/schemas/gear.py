from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class GearFields(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    itemDescription: Optional[str] = Field(None, alias="item description")
    category: Optional[str] = None
