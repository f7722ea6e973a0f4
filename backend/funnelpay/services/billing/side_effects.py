"""Deferred best-effort side effects.

WHAT: Collects email / registry / CRM / clone calls during processing and
      runs them after the financial transaction has committed
WHY: None of these are part of financial correctness; a slow or failing
     provider must neither hold the transaction open nor roll it back

Effects are never retried here. Each failure is logged and swallowed.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Tuple

logger = logging.getLogger(__name__)


@dataclass
class SideEffect:
    name: str
    func: Callable[..., Any]
    args: Tuple[Any, ...] = ()
    kwargs: Dict[str, Any] = field(default_factory=dict)


class SideEffects:
    """Ordered queue of side effects for one webhook delivery."""

    def __init__(self) -> None:
        self._effects: List[SideEffect] = []

    def add(self, name: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        self._effects.append(SideEffect(name=name, func=func, args=args, kwargs=kwargs))

    def clear(self) -> None:
        self._effects.clear()

    @property
    def names(self) -> List[str]:
        return [effect.name for effect in self._effects]

    def __len__(self) -> int:
        return len(self._effects)

    def run_all(self) -> int:
        """Run every queued effect once. Returns the number that failed."""
        failures = 0
        effects, self._effects = self._effects, []
        for effect in effects:
            try:
                effect.func(*effect.args, **effect.kwargs)
            except Exception as e:
                failures += 1
                logger.exception(f"[SIDE_EFFECT] {effect.name} failed: {e}")
        if effects:
            logger.info(f"[SIDE_EFFECT] Ran {len(effects)} side effects ({failures} failed)")
        return failures
