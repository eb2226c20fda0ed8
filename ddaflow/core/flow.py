import asyncio
import uuid
from copy import deepcopy
from pathlib import Path
from typing import Union, List, Optional, Tuple, Set

import ddaflow
from ddaflow.core.base import Component
from ddaflow.core.channel import Channel, Output
from ddaflow.core.models import FlowSpec
from ddaflow.core.task import BaseTask, Edge
from ddaflow.core.utils import check_cycle, class_deco
from ddaflow.utility.utils import change_cwd


class Flow(Component):
    """The organizer of tasks, flows can also be used as components of other flows. Only the top-most flow is a
    running unit, flows inside it just group tasks and pass their configs down.
    """
    FUNC_PAIRS = [('run', '__call__', True)]

    default_config = {
        'resources_limit': {
            'fork': 20
        }
    }

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.components: Optional[List[Component]] = None
        self.tasks: Optional[List[BaseTask]] = None
        self.edges: Optional[List[Edge]] = None
        self.skipped: Optional[List[str]] = None

    @property
    def config_name(self) -> str:
        return "flow_config"

    def __enter__(self):
        ddaflow.context.flow_stack.append(self)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        ddaflow.context.flow_stack.pop(-1)

    @property
    def is_top(self) -> bool:
        return self.context.get('flow_id') == self.config_dict['id']

    def call_initialize(self, *args, **kwargs):
        super().call_initialize(*args, **kwargs)
        self.components = []
        # only the top-most flow records the graph
        if not ddaflow.context.up_flow:
            self.tasks = []
            self.edges = []
            self.skipped = []

    def initialize_context(self):
        """A task's workdir == flow_workdir / up_flow_config.workdir / task_config.workdir, the first absolute
        one of them wins.
        """
        super().initialize_context()
        if not ddaflow.context.up_flow:
            flow_workdir = self.config_dict['workdir']
            if not Path(flow_workdir).is_absolute():
                flow_workdir = str(Path(flow_workdir).resolve())
            self.context.update({
                'flow_id': self.config_dict['id'],
                'flow_name': self.config_dict['name'],
                'flow_full_name': self.config_dict['full_name'],
                'flow_labels': self.config_dict['labels'],
                'flow_workdir': flow_workdir,
                'top_flow_config': self.config_dict
            })

    def call_build(self, *args, **kwargs) -> Union[Output, 'Flow']:
        self_context = deepcopy(self.context)
        self_context["up_" + self.config_name] = self_context[self.config_name]
        self_context.pop(self.config_name)
        with self, ddaflow.context(self_context):
            self.output = self.run(*args, **kwargs) or Channel.end()

        if ddaflow.context.up_flow:
            ddaflow.context.up_flow.components.append(self)
            return self.output

        if check_cycle(self.task_id_edges):
            raise ValueError("The dependency graph has cycle.")
        return self

    def run(self, *args, **kwargs) -> Channel:
        raise NotImplementedError("Not implemented. Users are supposed to compose flow/task in this method.")

    @property
    def executor_types(self) -> Set[str]:
        return {task.config_dict.get('executor_type', 'local') for task in self.tasks or []}

    async def start_execute(self, **kwargs):
        await super().start_execute(**kwargs)

        async def execute_child_components():
            futures = [asyncio.ensure_future(component.start(**kwargs)) for component in self.components]
            if not futures:
                return []
            done, pending = await asyncio.wait(futures, return_when=asyncio.FIRST_EXCEPTION)
            for fut in pending:
                fut.cancel()
            if pending:
                await asyncio.wait(pending)

            res_futures = list(done) + list(pending)
            self.check_future_exceptions(res_futures)
            return res_futures

        # only the top most flow starts the executors needed by its tasks
        if self.is_top:
            with change_cwd(self.context['flow_workdir']):
                async with ddaflow.context.start_executors(self.executor_types):
                    await execute_child_components()
        else:
            await execute_child_components()

    @property
    def task_id_edges(self) -> List[Tuple[str, str]]:
        edges = []
        for edge in self.edges:
            src_task = getattr(edge.channel, 'task', None)
            src_task_id = src_task.config_dict['id'] if src_task else str(uuid.uuid4())
            edges.append((src_task_id, edge.task.config_dict['id']))
        return edges

    def serialize(self) -> FlowSpec:
        assert self.initialized and self.tasks is not None, "Only a built top flow can be serialized."
        config = self.config
        return FlowSpec(
            id=config.id,
            name=config.name,
            full_name=config.full_name,
            labels=list(config.labels),
            tasks=[task.serialize() for task in self.tasks],
            edges=[edge.serialize() for edge in self.edges],
            skipped=list(self.skipped),
            docstring=type(self).__doc__ or "",
        )


flow = class_deco(Flow, 'run')
