"""Collector test double returning canned batches per (handle, data type)."""
from __future__ import annotations

from typing import Dict, List, Optional, Tuple, Union

from harvester.collect.session import Collector, Deadline

Script = Union[List[dict], BaseException]


class ScriptedCollector(Collector):
    def __init__(self, script: Optional[Dict[Tuple[str, str], Script]] = None) -> None:
        self.script: Dict[Tuple[str, str], Script] = dict(script or {})
        self.calls: List[Tuple[str, str, Optional[int], Optional[Deadline]]] = []

    def collect(
        self,
        handle: str,
        data_type: str,
        max_count: Optional[int] = None,
        *,
        deadline: Optional[Deadline] = None,
    ) -> List[dict]:
        self.calls.append((handle, data_type, max_count, deadline))
        outcome = self.script.get((handle, data_type), [])
        if isinstance(outcome, BaseException):
            raise outcome
        return list(outcome)
