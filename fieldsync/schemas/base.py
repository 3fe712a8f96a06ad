from typing import Any, Dict

from pydantic import BaseModel
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Records read from / written to the local store. Store and wire use camelCase keys."""

    class Config:
        from_attributes = True
        populate_by_name = True
        alias_generator = to_camel
        use_enum_values = True

    @classmethod
    def from_row(cls, row: Dict[str, Any]):
        return cls.model_validate(row)

    def to_row(self, exclude_none: bool = False) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=exclude_none)
