"""
# Model Descriptors

A `ModelDescriptor` is the immutable definition a concrete record type supplies to the model
registry: its name, the pydantic schema that validates its documents, the collection it lives
in and the indexes that collection needs.

```python
class Note(BaseModel):
    model_config = ConfigDict(extra="forbid")
    title: str = Field(..., min_length=1)
    body: str = ""

NOTE = ModelDescriptor(
    name="note",
    schema=Note,
    indexes=(IndexSpec.on("title"),),
)
NOTE.collection_name  # "notes"
NOTE.validate({"title": "Hello"})  # {"title": "Hello", "body": ""}
```

Validation is delegated entirely to pydantic; `validate()` and `validate_fields()` only
translate pydantic's report into this package's `ValidationError`.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple, Type

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from pymongo import ASCENDING

from tenant_mongodb.errors import MissingSchemaError, ValidationError, join_error_messages


def collection_name_for(model_name: str) -> str:
    """Default collection name: the lower-cased model name, pluralised with a trailing `s`."""
    name = model_name.strip().lower()
    return name if name.endswith("s") else f"{name}s"


@dataclass(frozen=True)
class IndexSpec:
    """
    One index a model needs on its collection.

    Attributes:
        keys (`Tuple[Tuple[str, int], ...]`): `(field, direction)` pairs.
        name (`Optional[str]`): Explicit index name; PyMongo derives one when omitted.
        unique (`bool`): Enforce uniqueness.
        sparse (`bool`): Skip documents missing the indexed fields.
        expire_after_seconds (`Optional[int]`): Turns the index into a TTL index.
        collation (`Optional[Mapping[str, Any]]`): Collation, e.g. `{"locale": "en", "strength": 2}`
            for case-insensitive matching.
    """

    keys: Tuple[Tuple[str, int], ...]
    name: Optional[str] = None
    unique: bool = False
    sparse: bool = False
    expire_after_seconds: Optional[int] = None
    collation: Optional[Mapping[str, Any]] = None

    @classmethod
    def on(cls, *fields: str, **options: Any) -> "IndexSpec":
        """Ascending index on `fields`."""
        return cls(keys=tuple((field_name, ASCENDING) for field_name in fields), **options)

    @property
    def index_name(self) -> str:
        if self.name:
            return self.name
        return "_".join(f"{field_name}_{direction}" for field_name, direction in self.keys)

    def create_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for `collection.create_index()`."""
        options: Dict[str, Any] = {"name": self.index_name}
        if self.unique:
            options["unique"] = True
        if self.sparse:
            options["sparse"] = True
        if self.expire_after_seconds is not None:
            options["expireAfterSeconds"] = self.expire_after_seconds
        if self.collation:
            options["collation"] = dict(self.collation)
        return options


@dataclass(frozen=True)
class ModelDescriptor:
    """
    Immutable schema definition of one record type.

    Attributes:
        name (`str`): Registry key, unique per tenant.
        schema (`Type[BaseModel]`): Pydantic model validating whole documents.
        collection_name (`Optional[str]`): Target collection. Defaults to `collection_name_for(name)`.
        indexes (`Tuple[IndexSpec, ...]`): Indexes created by `ModelRegistry.ensure_indexes()`.
        timestamps (`bool`): Maintain `createdAt` / `updatedAt` on writes.

    Raises:
        `MissingSchemaError`: If the name is blank or `schema` is not a pydantic model class.
    """

    name: str
    schema: Type[BaseModel]
    collection_name: Optional[str] = None
    indexes: Tuple[IndexSpec, ...] = ()
    timestamps: bool = True

    def __post_init__(self):
        if not isinstance(self.name, str) or not self.name.strip():
            raise MissingSchemaError("Model descriptor requires a non-empty name.")
        if not (isinstance(self.schema, type) and issubclass(self.schema, BaseModel)):
            raise MissingSchemaError(f'Missing or invalid schema in descriptor "{self.name}".')
        if not self.collection_name:
            object.__setattr__(self, "collection_name", collection_name_for(self.name))
        object.__setattr__(self, "indexes", tuple(self.indexes))

    def validate(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Validate a whole document.

        Returns:
            `Dict[str, Any]`: The document as it should be stored (field aliases applied,
                unset optional fields dropped).

        Raises:
            `ValidationError`: Listing every violated constraint.
        """
        try:
            record = self.schema.model_validate(dict(data))
        except PydanticValidationError as exc:
            errors = exc.errors()
            raise ValidationError(join_error_messages(errors), errors) from exc
        return record.model_dump(by_alias=True, exclude_none=True)

    def validate_fields(self, fields: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Validate a partial document, such as the fields of an update.

        Each field is checked against its own declaration only; fields absent from the
        patch are not required. Unknown fields are rejected.

        Raises:
            `ValidationError`: Listing every violated constraint.
        """
        lookup = self._field_lookup()
        partial = self.schema.model_construct()
        validated: Dict[str, Any] = {}
        errors: List[Dict[str, Any]] = []

        for key, value in fields.items():
            if key not in lookup:
                errors.append({"loc": (key,), "msg": "Extra inputs are not permitted", "type": "extra_forbidden"})
                continue
            attribute, stored_key = lookup[key]
            try:
                self.schema.__pydantic_validator__.validate_assignment(partial, attribute, value)
            except PydanticValidationError as exc:
                errors.extend(exc.errors())
                continue
            validated[stored_key] = getattr(partial, attribute)

        if errors:
            raise ValidationError(join_error_messages(errors), errors)
        return validated

    def _field_lookup(self) -> Dict[str, Tuple[str, str]]:
        """Map both attribute names and aliases to `(attribute, stored key)`."""
        lookup: Dict[str, Tuple[str, str]] = {}
        for attribute, info in self.schema.model_fields.items():
            stored_key = info.alias or attribute
            lookup[attribute] = (attribute, stored_key)
            lookup[stored_key] = (attribute, stored_key)
        return lookup
