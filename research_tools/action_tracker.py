import copy
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from research_tools.usage import TokenTracker

logger = logging.getLogger(__name__)

Listener = Callable[[Dict[str, Any]], None]


def _initial_state() -> Dict[str, Any]:
    return {
        "this_step": {"action": "answer", "answer": "", "references": [], "think": ""},
        "gaps": [],
        "bad_attempts": 0,
        "total_step": 0,
    }


class ActionTracker:
    """Latest loop snapshot plus change notifications.

    Listeners receive a deep copy of the state after every update. A listener
    that raises is logged and skipped; it never affects the loop.
    """

    def __init__(self) -> None:
        self._state: Dict[str, Any] = _initial_state()
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def detach() -> None:
            self.unsubscribe(listener)

        return detach

    def unsubscribe(self, listener: Listener) -> bool:
        with self._lock:
            try:
                self._listeners.remove(listener)
                return True
            except ValueError:
                return False

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    def track_action(self, **changes: Any) -> None:
        unknown = set(changes) - set(self._state)
        if unknown:
            raise KeyError(f"Unknown action state fields: {sorted(unknown)}")
        with self._lock:
            self._state.update(copy.deepcopy(changes))
            snapshot = copy.deepcopy(self._state)
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(copy.deepcopy(snapshot))
            except Exception:
                logger.exception("Action listener failed")

    def get_state(self) -> Dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._state)

    def reset(self) -> None:
        with self._lock:
            self._state = _initial_state()


@dataclass
class TrackerContext:
    """Per-session ledger and progress tracker, owned by exactly one run."""

    token_tracker: TokenTracker = field(default_factory=TokenTracker)
    action_tracker: ActionTracker = field(default_factory=ActionTracker)

    @classmethod
    def with_budget(cls, budget: Optional[int]) -> "TrackerContext":
        return cls(token_tracker=TokenTracker(budget=budget))
