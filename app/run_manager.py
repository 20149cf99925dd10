import json
import logging
import os
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from queue import Queue
from typing import Any, Callable, Dict, List, Optional

from app.models import RunState
from deep_research_agent import DeepResearchAgent, ResearchResult
from research_tools.action_tracker import TrackerContext
from research_tools.config import load_agent_config

logger = logging.getLogger(__name__)

AgentFactory = Callable[..., DeepResearchAgent]

TERMINAL_TYPES = {"answer", "error"}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _default_agent_factory(**kwargs: Any) -> DeepResearchAgent:
    return DeepResearchAgent.from_config(load_agent_config(), **kwargs)


class RunManager:
    """Runs research sessions on worker threads and fans out their progress.

    Every message published for a run is buffered so late subscribers get a
    full replay; the stream ends after the terminal ``answer`` or ``error``.
    """

    _MAX_MESSAGES_PER_RUN = 2000
    _MAX_EVENTS_PER_RUN = 2000

    def __init__(
        self,
        agent_factory: Optional[AgentFactory] = None,
        runs_dir: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
        max_finished_runs: int = 200,
    ) -> None:
        self._agent_factory = agent_factory or _default_agent_factory
        self._config = config or load_agent_config()
        self._runs: Dict[str, RunState] = {}
        self._subscribers: Dict[str, List[Queue]] = {}
        self._lock = threading.Lock()
        self._runs_dir = Path(runs_dir or os.getenv("RUNS_DIR", "runs"))
        # Finished runs stay in memory for replay; older ones are served from disk.
        self._max_finished_runs = max(1, int(max_finished_runs))

    def create_run(
        self,
        question: str,
        budget: Optional[int] = None,
        max_bad_attempts: Optional[int] = None,
    ) -> str:
        run_id = str(uuid.uuid4())
        now = _now()
        state = RunState(
            run_id=run_id,
            status="queued",
            question=question,
            created_at=now,
            updated_at=now,
            budget=int(budget or self._config["token_budget"]),
            max_bad_attempts=int(max_bad_attempts or self._config["max_bad_attempts"]),
        )
        with self._lock:
            self._runs[run_id] = state
            self._subscribers[run_id] = []

        t = threading.Thread(target=self._execute_run, args=(run_id,), daemon=True)
        t.start()
        return run_id

    def run_sync(
        self,
        question: str,
        budget: Optional[int] = None,
        max_bad_attempts: Optional[int] = None,
    ) -> ResearchResult:
        """Run a session on the calling thread; used by non-streaming chat requests."""
        run_budget = int(budget or self._config["token_budget"])
        agent = self._agent_factory(
            context=TrackerContext.with_budget(run_budget),
            token_budget=run_budget,
            max_bad_attempts=max_bad_attempts or self._config["max_bad_attempts"],
            verbose=False,
        )
        return agent.run(question)

    def get_snapshot(self, run_id: str) -> Optional[RunState]:
        with self._lock:
            state = self._runs.get(run_id)
            return state.model_copy(deep=True) if state else None

    def subscribe(self, run_id: str) -> Optional[Queue]:
        """Attach a subscriber queue pre-filled with every message published so far."""
        with self._lock:
            state = self._runs.get(run_id)
            if state:
                q: Queue = Queue()
                for message in state.messages:
                    q.put(message)
                self._subscribers[run_id].append(q)
                return q
        # Evicted runs only replay their outcome.
        stored = self.load_task_result(run_id)
        if stored is None:
            return None
        q = Queue()
        if stored.get("status") == "completed" and stored.get("result"):
            q.put({"type": "answer", "data": stored["result"]})
        else:
            q.put({"type": "error", "data": stored.get("error") or "unknown error"})
        return q

    def unsubscribe(self, run_id: str, queue: Queue) -> None:
        with self._lock:
            subs = self._subscribers.get(run_id, [])
            if queue in subs:
                subs.remove(queue)

    def _publish(self, run_id: str, message: Dict[str, Any]) -> None:
        with self._lock:
            state = self._runs.get(run_id)
            if not state:
                return
            state.messages.append(message)
            if len(state.messages) > self._MAX_MESSAGES_PER_RUN:
                del state.messages[: -self._MAX_MESSAGES_PER_RUN]
            state.updated_at = _now()
            subscribers = list(self._subscribers.get(run_id, []))
        for q in subscribers:
            q.put(message)

    def _record_event(self, run_id: str, event: Dict[str, Any]) -> None:
        with self._lock:
            state = self._runs.get(run_id)
            if state:
                state.events.append(event)
                if len(state.events) > self._MAX_EVENTS_PER_RUN:
                    del state.events[: -self._MAX_EVENTS_PER_RUN]
                state.updated_at = _now()

    def _set_status(self, run_id: str, **changes: Any) -> None:
        with self._lock:
            state = self._runs.get(run_id)
            if not state:
                return
            for key, value in changes.items():
                setattr(state, key, value)
            state.updated_at = _now()

    def _execute_run(self, run_id: str) -> None:
        snapshot = self.get_snapshot(run_id)
        if not snapshot:
            return
        context = TrackerContext.with_budget(snapshot.budget)

        def on_progress(tracker_state: Dict[str, Any]) -> None:
            this_step = tracker_state.get("this_step") or {}
            self._publish(
                run_id,
                {
                    "type": "progress",
                    "data": str(this_step.get("think", "") or ""),
                    "step": tracker_state.get("total_step", 0),
                    "state": tracker_state,
                    "budget": {
                        "used": context.token_tracker.total,
                        "total": snapshot.budget,
                        "percentage": round(100.0 * context.token_tracker.total / snapshot.budget, 2),
                    },
                },
            )

        detach = context.action_tracker.subscribe(on_progress)
        self._set_status(run_id, status="running")
        try:
            agent = self._agent_factory(
                context=context,
                token_budget=snapshot.budget,
                max_bad_attempts=snapshot.max_bad_attempts,
                event_callback=lambda event: self._record_event(run_id, event),
                run_id=run_id,
            )
            result = agent.run(snapshot.question)
        except Exception as exc:
            logger.exception("Research run %s failed", run_id)
            self._set_status(
                run_id,
                status="failed",
                error=str(exc),
                token_usage=context.token_tracker.to_dict(),
            )
            message = {"type": "error", "data": str(exc)}
        else:
            payload = result.to_dict()
            self._set_status(
                run_id,
                status="completed",
                result=payload,
                token_usage=context.token_tracker.to_dict(),
            )
            message = {"type": "answer", "data": payload}
        finally:
            detach()
        # The task file exists before the terminal event goes out.
        self._persist(run_id)
        self._publish(run_id, message)
        self._evict_finished()

    def _evict_finished(self) -> None:
        with self._lock:
            finished = sorted(
                (s for s in self._runs.values() if s.status in ("completed", "failed")),
                key=lambda s: s.updated_at,
            )
            for state in finished[: max(0, len(finished) - self._max_finished_runs)]:
                self._runs.pop(state.run_id, None)
                self._subscribers.pop(state.run_id, None)
                logger.info("Evicted finished run %s from memory", state.run_id)

    def _persist(self, run_id: str) -> None:
        state = self.get_snapshot(run_id)
        if not state:
            return
        path = self._runs_dir / f"task_{run_id}.json"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(
                json.dumps(
                    {
                        "run_id": state.run_id,
                        "status": state.status,
                        "question": state.question,
                        "created_at": state.created_at.isoformat(),
                        "updated_at": state.updated_at.isoformat(),
                        "result": state.result,
                        "error": state.error or "",
                        "usage": state.token_usage or {},
                        "trace": state.events,
                    },
                    ensure_ascii=False,
                    indent=2,
                ),
                encoding="utf-8",
            )
        except OSError as exc:
            logger.warning("Could not persist run %s: %s", run_id, exc)
            return
        self._set_status(run_id, state_file_path=str(path))

    def load_task_result(self, run_id: str) -> Optional[Dict[str, Any]]:
        """Persisted outcome of a finished run, or None when nothing was written."""
        if not run_id or "/" in run_id or "\\" in run_id or ".." in run_id:
            return None
        path = self._runs_dir / f"task_{run_id}.json"
        if not path.exists():
            return None
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Unreadable task file %s: %s", path, exc)
            return None
        return raw if isinstance(raw, dict) else None
