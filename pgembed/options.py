import json
import re
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict

from .errors import ConfigurationError

logger = structlog.get_logger()

DEFAULT_BATCH_SIZE = 80000
DEFAULT_TERMINATION_TIME_SECS = 23 * 60 * 60
DEFAULT_WHERE_CLAUSE = "TRUE"
DEFAULT_PROJECTION_COLUMNS = ("*",)
DEFAULT_ML_OPTIONS = "STRUCT(TRUE AS flatten_json_output)"

WILDCARD = "*"

INTEGER_PATTERN = re.compile(r"[-+]?[0-9]+")


class Configuration(BaseModel):
    """
    The fully resolved options of a run.

    Attributes:
        batch_size: The maximum number of rows submitted to the embedding
            backend per iteration.
        termination_time_secs: The wall-clock budget of the run. The budget
            is checked between iterations, so a run can exceed it by at most
            one iteration.
        where_clause: A SQL predicate over the source table. Injected
            verbatim into every read.
        projection_columns: The source columns copied into the destination,
            or ``("*",)`` for all of them.
        ml_options: The backend options expression, see ``ml_options.py``.
    """

    model_config = ConfigDict(frozen=True)

    batch_size: int = DEFAULT_BATCH_SIZE
    termination_time_secs: int = DEFAULT_TERMINATION_TIME_SECS
    where_clause: str = DEFAULT_WHERE_CLAUSE
    projection_columns: tuple[str, ...] = DEFAULT_PROJECTION_COLUMNS
    ml_options: str = DEFAULT_ML_OPTIONS

    @property
    def projects_all_columns(self) -> bool:
        return WILDCARD in self.projection_columns


def parse_int(value: Any) -> int | None:
    """Returns the integer held by a JSON value, or None if it holds none.

    JSON integers and strings of base-10 digits are accepted, the same values
    a SQL ``CAST(... AS INT64)`` of the extracted scalar would accept.
    Booleans and fractional numbers are not integers here.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str):
        value = value.strip()
        return int(value) if INTEGER_PATTERN.fullmatch(value) else None
    return None


def parse_str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def parse_str_list(value: Any) -> tuple[str, ...] | None:
    if not isinstance(value, list) or len(value) == 0:  # type: ignore[reportUnknownArgumentType]
        return None
    if not all(isinstance(v, str) for v in value):  # type: ignore[reportUnknownVariableType]
        return None
    return tuple(value)  # type: ignore[reportUnknownArgumentType]


def _invalid(key: str, kind: str) -> ConfigurationError:
    return ConfigurationError(f"Invalid {key}. It must be {kind}.")


def decode_options(options_string: str | dict[str, Any] | None) -> dict[str, Any]:
    if options_string is None:
        return {}
    if isinstance(options_string, dict):
        return options_string
    try:
        options = json.loads(options_string)
    except (TypeError, ValueError):
        raise ConfigurationError("Unable to parse options_string as JSON") from None
    if not isinstance(options, dict):
        raise ConfigurationError("Unable to parse options_string as JSON")
    return options  # type: ignore[reportUnknownVariableType]


def resolve_options(options_string: str | dict[str, Any] | None) -> Configuration:
    """
    Merges a sparse options document over the defaults.

    Args:
        options_string: A JSON object, as text or already decoded. ``'{}'``
            selects every default.

    Returns:
        Configuration: The resolved, immutable configuration.

    Raises:
        ConfigurationError: If the document is not a JSON object, or a
            recognized option has the wrong type. Unrecognized keys are
            ignored.
    """
    options = decode_options(options_string)
    resolved: dict[str, Any] = {}

    if options.get("batch_size") is not None:
        batch_size = parse_int(options["batch_size"])
        if batch_size is None:
            raise _invalid("batch_size", "an integer")
        if batch_size <= 0:
            raise _invalid("batch_size", "a positive integer")
        resolved["batch_size"] = batch_size

    if options.get("termination_time_secs") is not None:
        termination_time_secs = parse_int(options["termination_time_secs"])
        if termination_time_secs is None:
            raise _invalid("termination_time_secs", "an integer")
        if termination_time_secs < 0:
            raise _invalid("termination_time_secs", "a non-negative integer")
        resolved["termination_time_secs"] = termination_time_secs

    if options.get("where_clause") is not None:
        where_clause = parse_str(options["where_clause"])
        if where_clause is None or not where_clause.strip():
            raise _invalid("where_clause", "a non-empty string")
        resolved["where_clause"] = where_clause

    if options.get("projection_columns") is not None:
        projection_columns = parse_str_list(options["projection_columns"])
        if projection_columns is None:
            raise _invalid("projection_columns", "an array of strings")
        resolved["projection_columns"] = projection_columns

    if options.get("ml_options") is not None:
        ml_options = parse_str(options["ml_options"])
        if ml_options is None:
            raise _invalid("ml_options", "a string")
        resolved["ml_options"] = ml_options

    ignored = sorted(set(options) - set(Configuration.model_fields))
    if ignored:
        logger.debug("ignoring unrecognized options", keys=ignored)

    return Configuration(**resolved)
