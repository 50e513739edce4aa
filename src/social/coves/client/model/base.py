from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CovesModel(BaseModel):
    """
    Base for backend documents.

    Field names are snake_case in Python and camelCase on the wire. Unknown
    fields are ignored so newer backends do not break older clients.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def empty_if_none(value: Any) -> Any:
    """Backends send ``null`` for empty arrays; treat it as ``[]``."""
    return [] if value is None else value
