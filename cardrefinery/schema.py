"""Structured output schema validation and response parsing."""

from __future__ import annotations

import json
import re
from typing import Any, List, Optional, Tuple, Union

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError
from pydantic import BaseModel, Field

from .models import StructuredOutputSchema

_IDENTIFIER = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")
_CODE_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_QUANTIFIER_RANGE = re.compile(r"\{(\d+),(\d+)\}")

# Provider limits for structured output schemas
MAX_ANYOF_VARIANTS = 8
MAX_DEFS = 100
MAX_NESTING_DEPTH = 10
MAX_PROPERTIES_PER_OBJECT = 100
MAX_ENUM_VALUES = 500
MAX_OPTIONAL_FIELDS = 10
MAX_TOTAL_ANYOF = 50
SUPPORTED_STRING_FORMATS = (
    "date-time",
    "time",
    "date",
    "duration",
    "email",
    "hostname",
    "uri",
    "ipv4",
    "ipv6",
    "uuid",
)
SUPPORTED_MIN_ITEMS = (0, 1)

# Keywords rejected outright
UNSUPPORTED_FEATURES = (
    "if",
    "then",
    "else",
    "not",
    "oneOf",
    "dependentRequired",
    "dependentSchemas",
    "unevaluatedProperties",
    "unevaluatedItems",
    "$dynamicRef",
    "$dynamicAnchor",
)

# Keywords accepted but not enforced by the provider
IGNORED_CONSTRAINTS = (
    "minimum",
    "maximum",
    "exclusiveMinimum",
    "exclusiveMaximum",
    "multipleOf",
    "minLength",
    "maxLength",
    "maxItems",
    "uniqueItems",
    "contains",
    "minContains",
    "maxContains",
    "minProperties",
    "maxProperties",
    "propertyNames",
    "patternProperties",
)

UNSUPPORTED_REGEX_FEATURES = (
    (re.compile(r"\(\?[=!<]"), "lookahead/lookbehind assertions"),
    (re.compile(r"\\[1-9]"), "backreferences"),
    (re.compile(r"\\[bB]"), "word boundaries"),
)

_SCALARS = (str, int, float, bool, type(None))


class SchemaValidationResult(BaseModel):
    """Outcome of validating a structured output schema."""

    valid: bool
    parsed: Optional[StructuredOutputSchema] = None
    error: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)
    info: List[str] = Field(default_factory=list)


class _SchemaChecker:
    """Walk a schema body collecting provider compatibility problems."""

    def __init__(self, value: dict) -> None:
        self.errors: List[str] = []
        self.warnings: List[str] = []
        self.info: List[str] = []
        self.depth = 0
        self.max_depth = 0
        self.property_count = 0
        self.optional_count = 0
        self.anyof_count = 0
        self.anyof_variants = 0
        self.seen_refs: set[str] = set()

        defs = value.get("$defs")
        if not isinstance(defs, dict):
            defs = value.get("definitions")
        self.defs: dict = defs if isinstance(defs, dict) else {}

    def run(self, value: dict) -> None:
        if len(self.defs) > MAX_DEFS:
            self.errors.append(f"Too many definitions: {len(self.defs)} (limit: {MAX_DEFS})")
        self.node(value, "value")

        if self.optional_count > MAX_OPTIONAL_FIELDS:
            self.warnings.append(
                f"{self.optional_count} optional fields detected. Each spawns an implicit "
                "anyOf with null. Consider making fields required or reducing optionals."
            )
        total = self.anyof_variants + self.optional_count * 2
        if self.optional_count and total > MAX_TOTAL_ANYOF:
            self.warnings.append(
                f"High anyOf count (~{total} including implicit nullables). "
                "May cause slow schema compilation or errors."
            )
        self.info.append(
            f"Schema stats: {self.property_count} properties, {len(self.defs)} definitions, "
            f"{self.anyof_count} anyOf blocks, {self.optional_count} optional fields, "
            f"max depth {self.max_depth}"
        )

    def node(self, node: dict, path: str) -> None:
        self.depth += 1
        self.max_depth = max(self.max_depth, self.depth)
        try:
            self._check(node, path)
        finally:
            self.depth -= 1

    def _check(self, node: dict, path: str) -> None:
        if self.depth > MAX_NESTING_DEPTH:
            self.errors.append(f"{path}: Exceeds maximum nesting depth of {MAX_NESTING_DEPTH}")
            return

        for feature in UNSUPPORTED_FEATURES:
            if feature in node:
                self.errors.append(f"{path}: '{feature}' is not supported")
        for keyword in IGNORED_CONSTRAINTS:
            if keyword in node:
                self.warnings.append(f"{path}: '{keyword}' will be ignored (not supported)")

        ref = node.get("$ref")
        if isinstance(ref, str) and ref:
            self._ref(ref, path)
            return

        types = node.get("type")
        for type_name in types if isinstance(types, list) else [types]:
            if type_name == "object":
                self._object(node, path)
            elif type_name == "array":
                self._array(node, path)
            elif type_name == "string":
                self._string(node, path)
            elif type_name in ("number", "integer", "boolean", "null"):
                pass
            elif type_name and "anyOf" not in node and "allOf" not in node:
                self.warnings.append(f"{path}: Unknown type '{type_name}'")

        if isinstance(node.get("anyOf"), list):
            self._any_of(node["anyOf"], path)
        if isinstance(node.get("allOf"), list):
            self._all_of(node["allOf"], path)
        if isinstance(node.get("enum"), list):
            self._enum(node["enum"], path)
        if "const" in node and not isinstance(node["const"], _SCALARS):
            self.errors.append(
                f"{path}: const must be string, number, boolean, or null "
                f"(got {type(node['const']).__name__})"
            )

    def _object(self, node: dict, path: str) -> None:
        if node.get("additionalProperties") is not False:
            self.warnings.append(f"{path}: objects should set additionalProperties to false")

        properties = node.get("properties")
        if not isinstance(properties, dict):
            return
        self.property_count += len(properties)
        if len(properties) > MAX_PROPERTIES_PER_OBJECT:
            self.warnings.append(
                f"{path}: {len(properties)} properties (may be slow, consider splitting)"
            )
        required = node.get("required")
        if not isinstance(required, list):
            required = []
        optional = sorted(key for key in properties if key not in required)
        self.optional_count += len(optional)
        if optional:
            self.warnings.append(
                f"{path}: optional properties {optional} may be ignored in strict mode"
            )
        for key, prop in properties.items():
            if isinstance(prop, dict):
                self.node(prop, f"{path}.{key}")

    def _array(self, node: dict, path: str) -> None:
        min_items = node.get("minItems")
        if min_items is not None and min_items not in SUPPORTED_MIN_ITEMS:
            self.warnings.append(
                f"{path}: 'minItems: {min_items}' not supported (only 0 or 1 allowed)"
            )

        items = node.get("items")
        if isinstance(items, dict):
            self.node(items, f"{path}.items")
        elif isinstance(items, list):
            for i, item in enumerate(items):
                if isinstance(item, dict):
                    self.node(item, f"{path}.items[{i}]")
        for i, item in enumerate(node.get("prefixItems") or []):
            if isinstance(item, dict):
                self.node(item, f"{path}.prefixItems[{i}]")

    def _string(self, node: dict, path: str) -> None:
        fmt = node.get("format")
        if isinstance(fmt, str) and fmt not in SUPPORTED_STRING_FORMATS:
            self.warnings.append(
                f"{path}: format '{fmt}' may not be supported. "
                f"Supported: {', '.join(SUPPORTED_STRING_FORMATS)}"
            )
        pattern = node.get("pattern")
        if isinstance(pattern, str) and pattern:
            self._pattern(pattern, path)

    def _pattern(self, pattern: str, path: str) -> None:
        for check, name in UNSUPPORTED_REGEX_FEATURES:
            if check.search(pattern):
                self.errors.append(f"{path}: Regex pattern uses unsupported feature: {name}")
        try:
            re.compile(pattern)
        except re.error as e:
            self.errors.append(f"{path}: Invalid regex pattern: {e}")
        for match in _QUANTIFIER_RANGE.finditer(pattern):
            low, high = int(match.group(1)), int(match.group(2))
            if high - low > 100:
                self.warnings.append(
                    f"{path}: Large quantifier range {{{low},{high}}} may cause issues"
                )

    def _ref(self, ref: str, path: str) -> None:
        if ref.startswith(("http://", "https://")):
            self.errors.append(f"{path}: External $ref not supported ('{ref}')")
            return
        if ref in self.seen_refs:
            self.info.append(f"{path}: Circular reference to '{ref}'")
            return
        self.seen_refs.add(ref)
        name = re.sub(r"^#/(\$defs|definitions)/", "", ref)
        if name not in self.defs:
            self.errors.append(f"{path}: Reference '{ref}' not found in definitions")

    def _any_of(self, variants: list, path: str) -> None:
        self.anyof_count += 1
        self.anyof_variants += len(variants)
        if len(variants) > MAX_ANYOF_VARIANTS:
            self.errors.append(
                f"{path}: anyOf has {len(variants)} variants (max: {MAX_ANYOF_VARIANTS})"
            )
        if not variants:
            self.errors.append(f"{path}: anyOf cannot be empty")
            return
        for i, variant in enumerate(variants):
            if isinstance(variant, dict):
                self.node(variant, f"{path}.anyOf[{i}]")

    def _all_of(self, variants: list, path: str) -> None:
        if not variants:
            self.errors.append(f"{path}: allOf cannot be empty")
            return
        for i, variant in enumerate(variants):
            if isinstance(variant, dict):
                if "$ref" in variant:
                    self.errors.append(f"{path}.allOf[{i}]: allOf with $ref not supported")
                self.node(variant, f"{path}.allOf[{i}]")

    def _enum(self, values: list, path: str) -> None:
        if not values:
            self.errors.append(f"{path}: enum cannot be empty")
            return
        if len(values) > MAX_ENUM_VALUES:
            self.warnings.append(f"{path}: enum has {len(values)} values (may be slow)")
        for i, value in enumerate(values):
            if not isinstance(value, _SCALARS):
                self.errors.append(
                    f"{path}.enum[{i}]: Complex type not allowed in enum "
                    f"(got {type(value).__name__}). Only string, number, boolean, null permitted."
                )
                break
        seen: set[str] = set()
        for value in values:
            key = json.dumps(value, sort_keys=True)
            if key in seen:
                self.warnings.append(f"{path}: Duplicate value in enum: {key}")
                break
            seen.add(key)


def validate_schema(
    source: Union[str, dict, StructuredOutputSchema, None],
) -> SchemaValidationResult:
    """Validate a structured output schema given as JSON text or mapping.

    Empty text is valid and yields no schema; callers decide whether a
    schema is required.
    """
    if source is None or (isinstance(source, str) and not source.strip()):
        return SchemaValidationResult(valid=True)

    if isinstance(source, StructuredOutputSchema):
        parsed: Any = source.to_dict()
    elif isinstance(source, str):
        try:
            parsed = json.loads(source)
        except json.JSONDecodeError as e:
            return SchemaValidationResult(
                valid=False,
                error=f"JSON syntax error (line {e.lineno}, column {e.colno}): {e.msg}",
            )
    else:
        parsed = source

    if not isinstance(parsed, dict):
        kind = "array" if isinstance(parsed, list) else type(parsed).__name__
        return SchemaValidationResult(
            valid=False, error=f"Schema must be a JSON object, not {kind}"
        )

    name = parsed.get("name")
    if not isinstance(name, str):
        return SchemaValidationResult(
            valid=False, error="Missing required 'name' property (string)"
        )
    if not name.strip():
        return SchemaValidationResult(valid=False, error="'name' cannot be empty")
    if not _IDENTIFIER.match(name):
        return SchemaValidationResult(
            valid=False,
            error=(
                f"'name' must be a valid identifier (got '{name}'). Use letters, "
                "numbers, underscores; start with letter or underscore."
            ),
        )

    value = parsed.get("value")
    if not isinstance(value, dict):
        return SchemaValidationResult(
            valid=False, error="Missing or invalid 'value' property (must be object)"
        )
    if not isinstance(value.get("type"), str) and not any(
        value.get(keyword) for keyword in ("anyOf", "allOf", "$ref")
    ):
        return SchemaValidationResult(
            valid=False, error="'value' must have a 'type', 'anyOf', 'allOf', or '$ref'"
        )

    strict = parsed.get("strict")
    if strict is not None and not isinstance(strict, bool):
        return SchemaValidationResult(
            valid=False, error="'strict' must be a boolean if provided"
        )

    checker = _SchemaChecker(value)
    checker.run(value)
    if checker.errors:
        return SchemaValidationResult(
            valid=False, error="\n".join(checker.errors), warnings=checker.warnings
        )

    try:
        Draft202012Validator.check_schema(value)
    except SchemaError as e:
        location = "/".join(str(p) for p in e.path) or "value"
        return SchemaValidationResult(
            valid=False, error=f"Invalid JSON Schema at {location}: {e.message}"
        )

    schema = StructuredOutputSchema(name=name, strict=strict, value=value)
    return SchemaValidationResult(
        valid=True, parsed=schema, warnings=checker.warnings, info=checker.info
    )


def parse_structured_response(
    response: str, schema: Optional[StructuredOutputSchema] = None
) -> Optional[Tuple[Any, List[str]]]:
    """Parse a structured response, tolerating markdown code fences.

    Returns the decoded data and a list of schema mismatches, or ``None`` if
    no JSON could be decoded.
    """
    try:
        data = json.loads(response)
    except json.JSONDecodeError:
        match = _CODE_BLOCK.search(response)
        if not match:
            return None
        try:
            data = json.loads(match.group(1).strip())
        except json.JSONDecodeError:
            return None

    warnings: List[str] = []
    if schema is not None:
        validator = Draft202012Validator(schema.value)
        errors = sorted(
            validator.iter_errors(data), key=lambda e: [str(p) for p in e.absolute_path]
        )
        for err in errors:
            location = "/".join(str(p) for p in err.absolute_path) or "$"
            warnings.append(f"{location}: {err.message}")
    return data, warnings
