"""Pydantic schemas for listings, source pages and change-feed events."""

from datetime import datetime
from typing import Annotated, Any, List, Literal, Mapping, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

from .errors import FetchError, MalformedEventError


def _coerce_id(value: Any) -> Any:
    # Some feeds send numeric primary keys
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


class Item(BaseModel):
    """A catalog listing. Only ``id`` and ``version`` matter to the core;
    unknown fields are kept as-is."""

    model_config = ConfigDict(extra="allow")

    id: str
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    price_cents: Optional[int] = None
    title: Optional[str] = None

    _normalize_id = field_validator("id", mode="before")(_coerce_id)

    @model_validator(mode="after")
    def _version_from_updated_at(self) -> "Item":
        if "version" not in self.model_fields_set and self.updated_at is not None:
            self.version = int(self.updated_at.timestamp() * 1_000_000)
        return self

    def merged(self, other: "Item") -> "Item":
        """Return a copy of this item with the fields ``other`` carries applied."""
        update = other.model_dump(exclude_unset=True)
        update["version"] = other.version
        return self.model_copy(update=update)


class ListingsPage(BaseModel):
    """One page as returned by ``fetch_page``: ``{data, total, hasMore, error}``."""

    model_config = ConfigDict(populate_by_name=True, arbitrary_types_allowed=True)

    data: List[Item] = Field(default_factory=list)
    total: int = 0
    has_more: bool = Field(False, alias="hasMore")
    error: Optional[FetchError] = Field(None, exclude=True)


class InsertEvent(BaseModel):
    type: Literal["insert"] = "insert"
    item: Item


class UpdateEvent(BaseModel):
    type: Literal["update"] = "update"
    item: Item


class DeleteEvent(BaseModel):
    type: Literal["delete"] = "delete"
    id: str
    version: int = 0

    _normalize_id = field_validator("id", mode="before")(_coerce_id)


ChangeEvent = Annotated[
    Union[InsertEvent, UpdateEvent, DeleteEvent], Field(discriminator="type")
]

_EVENT_ADAPTER: TypeAdapter = TypeAdapter(ChangeEvent)
_PG_EVENT_TYPES = {"INSERT": "insert", "UPDATE": "update", "DELETE": "delete"}


def _normalize(raw: Mapping[str, Any]) -> dict:
    """Map both accepted wire shapes onto ``{type, item}`` / ``{type, id}``.

    Shapes:
        * ``{"type": "insert"|"update"|"delete", "item": {...}}``
        * ``{"eventType": "INSERT"|"UPDATE"|"DELETE", "new": {...}, "old": {...}}``
    """
    if "eventType" in raw:
        kind = _PG_EVENT_TYPES.get(str(raw.get("eventType")).upper())
        item = raw.get("old") if kind == "delete" else raw.get("new")
    else:
        kind = raw.get("type")
        kind = kind.lower() if isinstance(kind, str) else kind
        item = raw.get("item")

    if kind == "delete":
        src = item if isinstance(item, Mapping) else {}
        out = {"type": "delete", "id": raw.get("id", src.get("id"))}
        if "version" in src:
            out["version"] = src["version"]
        return out
    return {"type": kind, "item": item}


def parse_change_event(raw: Any) -> Union[InsertEvent, UpdateEvent, DeleteEvent]:
    """Validate a change-feed payload into a tagged event.

    Raises:
        MalformedEventError: If the payload is not a mapping, names an unknown
            event type, or carries an item without a usable id.
    """
    if isinstance(raw, (InsertEvent, UpdateEvent, DeleteEvent)):
        return raw
    if not isinstance(raw, Mapping):
        raise MalformedEventError(f"event is not an object: {type(raw).__name__}")
    try:
        return _EVENT_ADAPTER.validate_python(_normalize(raw))
    except ValidationError as exc:
        raise MalformedEventError(str(exc)) from exc
