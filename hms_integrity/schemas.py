"""
schemas.py
==========
Pydantic models used for coercing incoming request bodies and
structuring outgoing API responses.

Payload models are generated from the catalog, one per entity kind, so
JSON strings become the ``date``/``time``/``Decimal`` values the engine
validates. Every payload field is optional here: required-field and
business-rule checks belong to the engine.
"""

import datetime
import decimal
from functools import lru_cache
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, create_model

from .catalog import HOSPITAL_CATALOG, EntityKind, FieldType

_PY_TYPES = {
    FieldType.integer: int,
    FieldType.text: str,
    FieldType.decimal: decimal.Decimal,
    FieldType.date: datetime.date,
    FieldType.datetime: datetime.datetime,
    FieldType.time: datetime.time,
}


@lru_cache(maxsize=None)
def payload_model(kind: EntityKind, for_update: bool = False) -> Type[BaseModel]:
    """
    Build the request model for ``kind``.
    Inserts cannot carry generated fields; updates may carry ``id`` to re-key.
    """
    schema = HOSPITAL_CATALOG.describe(kind)
    fields = {}
    for definition in schema.fields:
        if definition.generated and not for_update:
            continue
        fields[definition.name] = (Optional[_PY_TYPES[definition.type]], None)
    name = f"{schema.kind.value}{'Update' if for_update else 'Insert'}Payload"
    return create_model(name, __config__=ConfigDict(extra="forbid"), **fields)


def parse_payload(kind: EntityKind, body: Dict[str, Any], for_update: bool = False) -> Dict[str, Any]:
    """Coerce a JSON body; raises pydantic.ValidationError on bad types or unknown fields."""
    model = payload_model(EntityKind(kind), for_update)
    return model.model_validate(body).model_dump(exclude_unset=True)


class InsertResponse(BaseModel):
    """Response model for a created row."""
    id: int


class RowRef(BaseModel):
    kind: str
    id: int


class DeleteResponse(BaseModel):
    """Response model for a delete and everything it touched."""
    ok: bool = True
    deleted: List[RowRef]
    nullified: List[RowRef]


class ErrorResponse(BaseModel):
    error: str
    message: str
    transient: bool = False
    details: Dict[str, Any] = {}
