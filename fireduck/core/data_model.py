__all__ = ["DataModel"]

from typing import Self

from pydantic import BaseModel, ConfigDict


class DataModel(BaseModel):
    """Data model."""

    model_config = ConfigDict(arbitrary_types_allowed=True, extra="ignore")

    def with_updates(self, **kwargs) -> Self:
        return self.model_copy(update=kwargs)
