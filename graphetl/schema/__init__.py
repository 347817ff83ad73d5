"""Source schema model, type classification and augmentation."""

from graphetl.schema.augment import AugmentationRule, AugmentedSchema, DirectiveIntent, augment
from graphetl.schema.classify import Classification, TypeRole, classify
from graphetl.schema.models import FieldKind, SchemaField, SchemaModel, SchemaType

__all__ = [
    "FieldKind",
    "SchemaField",
    "SchemaType",
    "SchemaModel",
    "TypeRole",
    "Classification",
    "classify",
    "DirectiveIntent",
    "AugmentationRule",
    "AugmentedSchema",
    "augment",
]
