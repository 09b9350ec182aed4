from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from hativon.internal_core.draft_store import DraftRecord


@dataclass(frozen=True)
class Caller:
    user_id: str
    display_name: str = ""


# Ownership predicate supplied by the identity service.
OwnershipPolicy = Callable[[Caller, DraftRecord], bool]


def author_owns_draft(caller: Caller, record: DraftRecord) -> bool:
    return bool(caller.user_id) and record.author_id == caller.user_id
