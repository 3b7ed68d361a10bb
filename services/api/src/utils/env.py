"""Declarative environment variables, parsed and validated with pydantic."""

import os
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Tuple

from pydantic import ValidationError, create_model

from . import log

logger = log.get_logger(__name__)


@dataclass(frozen=True)
class EnvVarSpec:
    id: str
    default: Optional[str] = None
    is_optional: bool = False
    parse: Callable[[str], Any] = lambda x: x
    # pydantic field definition used by validate(), e.g. (int, ...)
    type: Tuple[Any, Any] = (str, ...)


def parse(spec: EnvVarSpec) -> Any:
    raw = os.environ.get(spec.id, spec.default)
    if raw is None:
        if spec.is_optional:
            return None
        raise ValueError(f"Missing required environment variable {spec.id}")
    return spec.parse(raw)


def validate(specs: List[EnvVarSpec]) -> bool:
    """Parse every spec and type-check the results; log each problem found."""
    values = {}
    fields = {}
    ok = True
    for spec in specs:
        try:
            value = parse(spec)
        except Exception as e:
            logger.error(f"Invalid environment variable {spec.id}: {e}")
            ok = False
            continue
        if value is None:
            continue
        values[spec.id] = value
        fields[spec.id] = spec.type

    if not ok:
        return False

    model = create_model("EnvVars", **fields)
    try:
        model(**values)
    except ValidationError as e:
        for error in e.errors():
            logger.error(f"Invalid environment variable {error['loc'][0]}: {error['msg']}")
        return False
    return True
