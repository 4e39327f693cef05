from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from conductor.core.cancellation import CancellationToken
from conductor.tools.settings import ToolSettings


@dataclass(slots=True)
class ToolContext:
    root: Path
    settings: ToolSettings
    task_id: str = ""
    call_id: str = ""
    cancel: CancellationToken = field(default_factory=CancellationToken)
