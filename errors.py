# errors.py
from enum import Enum
from typing import Any, Dict, List, NamedTuple


class FieldError(NamedTuple):
  path: str
  message: str

  def to_dict(self) -> Dict[str, str]:
    return {"path": self.path, "message": self.message}


class BillingError(Exception):
  """Base for every error the billing core raises on purpose."""


class ValidationError(BillingError):
  def __init__(self, errors: List[FieldError]):
    self.errors = list(errors)
    super().__init__("; ".join(f"{e.path or '<payload>'}: {e.message}" for e in self.errors))

  def details(self) -> List[Dict[str, str]]:
    return [e.to_dict() for e in self.errors]


class NotFoundError(BillingError):
  def __init__(self, entity: str, entity_id: Any):
    self.entity = entity
    self.entity_id = entity_id
    super().__init__(f"{entity} {entity_id} not found")


class ConflictKind(str, Enum):
  DUPLICATE_UNIQUE = "duplicate-unique"
  REFERENCED_BY_ACTIVE_CHILDREN = "referenced-by-active-children"
  ALREADY_TERMINAL = "already-terminal-state"
  ILLEGAL_TRANSITION = "illegal-transition"


class ConflictError(BillingError):
  def __init__(self, kind: ConflictKind, message: str):
    self.kind = kind
    self.message = message
    super().__init__(message)


class ReferentialError(BillingError):
  """A create referenced a row that does not exist."""

  def __init__(self, entity: str, field: str, ref_id: Any = None):
    self.entity = entity
    self.field = field
    self.ref_id = ref_id
    if ref_id is None:
      super().__init__(f"{field} does not reference an existing {entity}")
    else:
      super().__init__(f"{field} {ref_id} does not reference an existing {entity}")


class StoreError(BillingError):
  """Unclassified store failure; fatal for the request."""
