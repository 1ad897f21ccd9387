"""flexcrm kernel utilities."""

from .errors import BackendError, InvalidTransition, NotFoundError, ProvisioningError
from .naming import ENTITY_NAME_RE, SYSTEM_COLUMNS, is_valid_entity_name, parse_options, singular_label, slugify_name
from .values import Boolean, DateValue, Number, OptionRef, Text, decode_record, decode_value, encode_value
from .validation import FIELD_TYPES, LAYOUT_TYPES, validate_entity_definition, validate_field_definition, validate_record_payload

__all__ = [
    "BackendError",
    "InvalidTransition",
    "NotFoundError",
    "ProvisioningError",
    "ENTITY_NAME_RE",
    "SYSTEM_COLUMNS",
    "is_valid_entity_name",
    "parse_options",
    "singular_label",
    "slugify_name",
    "Boolean",
    "DateValue",
    "Number",
    "OptionRef",
    "Text",
    "decode_record",
    "decode_value",
    "encode_value",
    "FIELD_TYPES",
    "LAYOUT_TYPES",
    "validate_entity_definition",
    "validate_field_definition",
    "validate_record_payload",
]
