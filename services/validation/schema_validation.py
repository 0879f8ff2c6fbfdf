from functools import lru_cache
from pathlib import Path
from typing import Any, Tuple
import json

import jsonschema

REPO_ROOT = Path(__file__).resolve().parents[2]
SCHEMA_DIR = REPO_ROOT / "config" / "schemas"


@lru_cache(maxsize=None)
def _validator(name: str):
    # a missing or broken schema is a deployment error, not bad input
    schema_path = SCHEMA_DIR / f"{name}.schema.json"
    if not schema_path.exists():
        raise FileNotFoundError(f"Schema not found: {schema_path}")
    schema = json.loads(schema_path.read_text(encoding="utf-8"))
    cls = jsonschema.validators.validator_for(schema)
    cls.check_schema(schema)
    return cls(schema)


def validate_with_schema(data: Any, name: str) -> Tuple[bool, str]:
    """
    (True, "Valid") or (False, message) where the message leads with the
    JSON path of the first offending value, e.g. `3/orderId: ...`.
    """
    error = jsonschema.exceptions.best_match(_validator(name).iter_errors(data))
    if error is None:
        return True, "Valid"
    where = "/".join(str(p) for p in error.absolute_path)
    return False, f"{where}: {error.message}" if where else error.message
