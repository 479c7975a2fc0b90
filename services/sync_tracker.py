from dataclasses import dataclass, asdict
from typing import Dict, Optional, List
import threading
import uuid
import time

@dataclass
class _Task:
    id: str; title: str; kind: str = "generic"; processed: int = 0; total: Optional[int] = None
    done: bool = False; ok: Optional[bool] = None
    note: Optional[str] = None; created_at: float = 0.0; updated_at: float = 0.0

# Background tasks triggered from the API, kept in memory for the status page.
_TASKS: Dict[str, _Task] = {}
_LOCK = threading.Lock()
def _now() -> float: return time.time()
def add_task(title: str, kind: str = "generic") -> str:
    t = _Task(id=str(uuid.uuid4()), title=title, kind=kind, created_at=_now(), updated_at=_now())
    with _LOCK:
        _TASKS[t.id] = t
    return t.id
def step(task_id: str, processed: int, note: Optional[str] = None, total: Optional[int] = None):
    if t := _TASKS.get(task_id):
        t.processed, t.note, t.updated_at = processed, note, _now()
        if total is not None:
            t.total = total
def finish_task(task_id: str, ok: bool, note: Optional[str] = None):
    if t := _TASKS.get(task_id):
        t.done, t.ok, t.note, t.updated_at = True, ok, note, _now()
def get_task(task_id: str) -> Optional[Dict]:
    t = _TASKS.get(task_id)
    return asdict(t) if t else None
def list_tasks(kind: Optional[str] = None) -> List[Dict]:
    tasks = [t for t in _TASKS.values() if kind is None or t.kind == kind]
    return [asdict(t) for t in sorted(tasks, key=lambda x: x.updated_at, reverse=True)]
def clear_finished(older_than_seconds: int = 3600):
    now = _now()
    with _LOCK:
        for k in [k for k, t in _TASKS.items() if t.done and (now - t.updated_at) >= older_than_seconds]:
            _TASKS.pop(k, None)
