from collections.abc import Mapping
from string import Template
from typing import Any

PLACEHOLDER = "Unknown"

REQUIRED_FIELDS = ("name", "creators", "description")
OPTIONAL_FIELDS = ("product_category", "type_of_influencer")

TEMPLATE = Template(
    "Brand: $name\n"
    "Creators: $creators\n"
    "Category: $product_category\n"
    "Creator Type: $type_of_influencer\n"
    "Description: $description"
)


def _field(brand: Mapping[str, Any] | object, name: str) -> Any:
    if isinstance(brand, Mapping):
        return brand.get(name)  # type: ignore
    return getattr(brand, name, None)


def build_embedding_text(brand: Mapping[str, Any] | object) -> str:
    """
    Renders the fields of a brand into the text that gets embedded.

    The layout never changes between brands: optional fields that are missing
    or blank are rendered as "Unknown". The queue stores this text verbatim,
    so the output must depend on nothing but the input.
    """
    values: dict[str, str] = {}
    for name in REQUIRED_FIELDS:
        value = _field(brand, name)
        values[name] = "" if value is None else str(value)
    for name in OPTIONAL_FIELDS:
        value = _field(brand, name)
        if value is None or not str(value).strip():
            values[name] = PLACEHOLDER
        else:
            values[name] = str(value)
    return TEMPLATE.substitute(values)


def prepare_embedding_input(text: str, max_chars: int = 8000) -> str:
    return text.strip()[:max_chars]
