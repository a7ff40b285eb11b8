from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List


@dataclass(frozen=True)
class ConsentCheck:
    subject_id: str
    missing: List[str] = field(default_factory=list)
    consents: Dict[str, bool] = field(default_factory=dict)

    @property
    def has_all(self) -> bool:
        return not self.missing

    def to_dict(self) -> Dict[str, Any]:
        return {"hasAllConsents": self.has_all, "missingConsents": list(self.missing), "consents": dict(self.consents)}


def check_required_consents(store: Any, subject_id: str, required: Iterable[str]) -> ConsentCheck:
    """
    A consent counts only if the subject's latest decision for that type is a
    grant; a later revocation makes it missing again.
    """
    wanted = [str(t) for t in dict.fromkeys(required)]
    latest = store.latest_consents(str(subject_id), wanted)
    missing = [t for t in wanted if not latest.get(t, False)]
    return ConsentCheck(subject_id=str(subject_id), missing=missing, consents=latest)
