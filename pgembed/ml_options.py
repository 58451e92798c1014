import json
import re
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

from .errors import ConfigurationError


class MlOptions(BaseModel):
    """
    Options handed to the embedding backend on every call.

    Attributes:
        flatten_json_output: Store the embedding as a vector column, with the
            statistics in their own column. When false, the whole response
            is stored as a single JSON document.
        output_dimensionality: The number of dimensions requested from the
            model, if the provider supports choosing it.

    Any other option is kept as an extra field and passed through to the
    provider untouched.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    flatten_json_output: bool = True
    output_dimensionality: int | None = None

    @property
    def provider_options(self) -> dict[str, Any]:
        return dict(self.model_extra or {})


_STRUCT_RE = re.compile(r"^\s*STRUCT\s*\((?P<body>.*)\)\s*$", re.IGNORECASE | re.DOTALL)

_FIELD_RE = re.compile(
    r"""
    \s*
    (?P<value>
        '(?:[^'\\]|\\.)*'
      | "(?:[^"\\]|\\.)*"
      | [-+]?\d+(?:\.\d*)?(?:[eE][-+]?\d+)?
      | TRUE | FALSE | NULL
    )
    \s+AS\s+
    (?P<name>[A-Za-z_][A-Za-z0-9_]*)
    \s*(?:,|$)
    """,
    re.IGNORECASE | re.VERBOSE,
)


def _literal(token: str) -> Any:
    upper = token.upper()
    if upper == "TRUE":
        return True
    if upper == "FALSE":
        return False
    if upper == "NULL":
        return None
    if token[0] in "'\"":
        return re.sub(r"\\(.)", r"\1", token[1:-1])
    if re.fullmatch(r"[-+]?\d+", token):
        return int(token)
    return float(token)


def parse_struct(expression: str) -> dict[str, Any] | None:
    """Parses ``STRUCT(<literal> AS <name>, ...)`` into a dict.

    Returns None if the expression is not a struct of literals.

    >>> parse_struct("STRUCT(TRUE AS flatten_json_output, 256 AS output_dimensionality)")
    {'flatten_json_output': True, 'output_dimensionality': 256}
    """
    match = _STRUCT_RE.match(expression)
    if match is None:
        return None
    body = match.group("body").strip()
    fields: dict[str, Any] = {}
    pos = 0
    while pos < len(body):
        field = _FIELD_RE.match(body, pos)
        if field is None:
            return None
        fields[field.group("name").lower()] = _literal(field.group("value"))
        pos = field.end()
    return fields


def parse_ml_options(expression: str) -> MlOptions:
    """
    Parses the ``ml_options`` expression of a run.

    Two notations are accepted: a SQL struct of literals, as in
    ``STRUCT(TRUE AS flatten_json_output)``, or a JSON object such as
    ``{"flatten_json_output": true}``.

    Raises:
        ConfigurationError: If the expression is in neither notation, or an
            option has the wrong type.
    """
    fields = parse_struct(expression)
    if fields is None:
        try:
            decoded = json.loads(expression)
        except ValueError:
            decoded = None
        if not isinstance(decoded, dict):
            raise ConfigurationError(
                "Invalid ml_options. It must be a STRUCT expression or a JSON object."
            )
        fields = decoded  # type: ignore[reportUnknownVariableType]
    try:
        return MlOptions.model_validate(fields)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid ml_options. {e}") from None
