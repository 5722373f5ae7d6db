from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Union

from govsso_client.storage.models import SessionRecord


class FailureKind(str, Enum):
    EXPIRED = "expired"  # session expired by logout or token expiry
    VALIDATION = "validation"  # token failed validation or described another principal
    UPSTREAM = "upstream"  # identity provider unreachable or refused
    UNAUTHENTICATED = "unauthenticated"  # no usable credentials left


@dataclass(frozen=True)
class Success:
    record: Optional[SessionRecord] = None
    refreshed: bool = False


@dataclass(frozen=True)
class Failure:
    kind: FailureKind
    error_code: str
    detail: Dict[str, Any] = field(default_factory=dict)


Result = Union[Success, Failure]
