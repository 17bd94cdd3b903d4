"""
Sensitive field schemas.

Each record type declares the fields that hold PII and what happens to each:
ENCRYPT stores ciphertext only, ENCRYPT_AND_INDEX also derives the identifier
hash from the same plaintext.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional

from protection.errors import SchemaError


class FieldRule(str, Enum):
    """How a sensitive field is protected"""
    ENCRYPT = "encrypt"
    ENCRYPT_AND_INDEX = "encrypt_and_index"


@dataclass(frozen=True)
class SensitiveField:
    name: str
    rule: FieldRule = FieldRule.ENCRYPT
    description: str = ""

    @property
    def indexed(self) -> bool:
        return self.rule == FieldRule.ENCRYPT_AND_INDEX


class RecordSchema:
    """Fixed set of sensitive fields for one record type"""

    def __init__(self, record_type: str, fields: Iterable[SensitiveField]):
        self.record_type = record_type
        self._fields: Dict[str, SensitiveField] = {}
        for f in fields:
            if f.name in self._fields:
                raise SchemaError(f"Duplicate field {f.name!r} in schema {record_type!r}")
            self._fields[f.name] = f

        indexed = [f for f in self._fields.values() if f.indexed]
        if len(indexed) > 1:
            raise SchemaError(
                f"Schema {record_type!r} indexes more than one field: "
                f"{', '.join(f.name for f in indexed)}"
            )
        self.indexed_field: Optional[SensitiveField] = indexed[0] if indexed else None

    @property
    def field_names(self) -> List[str]:
        return list(self._fields)

    def get(self, name: str) -> SensitiveField:
        try:
            return self._fields[name]
        except KeyError:
            raise SchemaError(f"Unknown field {name!r} for record type {self.record_type!r}")

    def validate_values(self, values: Dict[str, str]) -> None:
        """
        Check a field_name -> plaintext mapping against the schema.

        Raises:
            SchemaError: On unknown field names or non-string values
        """
        unknown = [name for name in values if name not in self._fields]
        if unknown:
            raise SchemaError(
                f"Unknown field(s) for record type {self.record_type!r}: {', '.join(sorted(unknown))}"
            )
        for name, value in values.items():
            if not isinstance(value, str):
                # Never echo the value itself
                raise SchemaError(f"Field {name!r} must be a string, got {type(value).__name__}")

    def __contains__(self, name: object) -> bool:
        return name in self._fields

    def __repr__(self) -> str:
        return f"<RecordSchema(record_type='{self.record_type}', fields={self.field_names})>"


IDENTITY_DOCUMENT = RecordSchema("identity_document", [
    SensitiveField("identifier", FieldRule.ENCRYPT_AND_INDEX, "National ID or passport number"),
    SensitiveField("full_name"),
    SensitiveField("date_of_birth"),
    SensitiveField("address"),
    SensitiveField("place_of_birth"),
])
