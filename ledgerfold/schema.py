"""JSON Schema validation for ledgerfold documents.

Schemas ship inside the package (``ledgerfold/schemas``) and reference a
shared ``common.schema.json`` through a ``referencing`` registry, so
``$ref`` resolution never touches the network.

Provides:
- Cross-reference registry over every packaged schema
- Cached validators per schema name
- Error lists for callers that report, ``require_valid`` for callers that fail
"""

from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List

from jsonschema import Draft202012Validator
from referencing import Registry, Resource
from referencing.jsonschema import DRAFT202012

from ledgerfold.errors import SchemaError

SCHEMAS_DIR = Path(__file__).resolve().parent / "schemas"

SCHEMA_NAMES = (
    "leaf",
    "aggregate-proof",
    "public-inputs",
    "provenance-entry",
    "distribution-job",
)


def _load_schema(path: Path) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


@lru_cache(maxsize=1)
def schema_registry() -> Registry:
    """Registry of every packaged schema keyed by its ``$id``."""
    resources = []
    for schema_path in sorted(SCHEMAS_DIR.glob("*.schema.json")):
        schema = _load_schema(schema_path)
        resources.append(
            (schema["$id"], Resource.from_contents(schema, default_specification=DRAFT202012))
        )
    return Registry().with_resources(resources)


@lru_cache(maxsize=None)
def schema_validator(name: str) -> Draft202012Validator:
    """Validator for ``<name>.schema.json``."""
    path = SCHEMAS_DIR / f"{name}.schema.json"
    if not path.exists():
        raise KeyError(f"Unknown schema: {name}")
    return Draft202012Validator(_load_schema(path), registry=schema_registry())


def validate_document(obj: Any, name: str) -> List[str]:
    """Validate ``obj`` against a named schema.

    Returns:
        List of validation error messages (empty if valid)
    """
    validator = schema_validator(name)
    return [
        f"{error.json_path}: {error.message}"
        for error in sorted(validator.iter_errors(obj), key=str)
    ]


def require_valid(obj: Any, name: str) -> None:
    errors = validate_document(obj, name)
    if errors:
        raise SchemaError(name, errors)
