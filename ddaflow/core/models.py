from datetime import datetime, timezone
from typing import List, Optional, Dict

from pydantic import BaseModel, Field


def current_timestamp() -> float:
    return datetime.now(timezone.utc).timestamp()


class Model(BaseModel):
    pass


class RunWarning(Model):
    """A non-fatal problem met during a run, surfaced in the QC report."""
    kind: str
    message: str
    task: Optional[str] = None
    setname: Optional[str] = None
    key: Optional[str] = None
    time: float = Field(default_factory=current_timestamp)

    def __dask_tokenize__(self):
        # records carrying warnings are hashed without the timestamp
        return type(self).__name__, self.kind, self.message, self.task, self.setname, self.key

    def __str__(self):
        where = '|'.join(v for v in (self.task, self.setname, self.key) if v)
        return f"[{self.kind}]" + (f" [{where}]" if where else "") + f" {self.message}"


class ChannelSpec(Model):
    id: str
    task_id: Optional[str] = None
    constant: bool = False


class EdgeSpec(Model):
    channel_id: str
    task_id: str


class TaskSpec(Model):
    id: str
    name: str
    full_name: str
    labels: List[str] = Field(default_factory=list)
    operator: bool = False
    output: List[ChannelSpec] = Field(default_factory=list)
    resources: Dict[str, float] = Field(default_factory=dict)
    docstring: str = ""


class FlowSpec(Model):
    """Static description of a built flow: every task node and every channel->task edge."""
    id: str
    name: str
    full_name: str
    labels: List[str] = Field(default_factory=list)
    tasks: List[TaskSpec] = Field(default_factory=list)
    edges: List[EdgeSpec] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)
    docstring: str = ""

    def task_names(self, operators: bool = False) -> List[str]:
        return [task.name for task in self.tasks if operators or not task.operator]


class TaskRunRecord(Model):
    task: str
    run_key: str
    state: str
    message: str = ""


class RunReport(Model):
    """Summary of a flow run: the end state of every task run plus the collected warnings."""
    flow: str
    state: str = ""
    taskruns: List[TaskRunRecord] = Field(default_factory=list)
    warnings: List[RunWarning] = Field(default_factory=list)

    def count(self, state: str) -> int:
        return sum(1 for run in self.taskruns if run.state == state)

    @property
    def num_executed(self) -> int:
        return self.count('Success')

    @property
    def num_cached(self) -> int:
        return self.count('Cached')
