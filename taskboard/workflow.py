"""
Optional workflow policy layered on top of the engine.

The engine itself permits every column change (completed -> todo included).
Boards that want a stricter workflow configure an allowed-transitions map;
the executor consults it before planning a cross-column move.
"""
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from .schema import ConfigError, TransitionNotAllowed


class TransitionPolicy:
    """Allowed column transitions. `None` means every transition is allowed."""

    def __init__(self, allowed: Optional[Mapping[str, Iterable[str]]] = None):
        self.allowed: Optional[Dict[str, List[str]]] = None
        if allowed is not None:
            self.allowed = {str(k): [str(v) for v in vs] for k, vs in allowed.items()}

    @classmethod
    def permissive(cls) -> "TransitionPolicy":
        return cls(None)

    def validate(self, statuses: Sequence[str]) -> None:
        """Every status named in the map must be a configured column."""
        if self.allowed is None:
            return
        known = set(statuses)
        for source, targets in self.allowed.items():
            unknown = [s for s in [source, *targets] if s not in known]
            if unknown:
                raise ConfigError(
                    f"Transition map references unknown columns: {', '.join(unknown)}. "
                    f"Available: {list(statuses)}"
                )

    def permits(self, source: str, target: str) -> bool:
        if source == target or self.allowed is None:
            return True
        return target in self.allowed.get(source, [])

    def check(self, source: str, target: str) -> None:
        if not self.permits(source, target):
            raise TransitionNotAllowed(f"Invalid transition: {source} → {target}")
