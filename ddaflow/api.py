"""
Expose all public names of the engine, the tasks and the pipeline.
"""
# noinspection PyUnresolvedReferences
import ddaflow
# noinspection PyUnresolvedReferences
from ddaflow.core.base import ComponentCallError, ComponentExecuteError, root_cause
# noinspection PyUnresolvedReferences
from ddaflow.core.channel import *
# noinspection PyUnresolvedReferences
from ddaflow.core.record import *
# noinspection PyUnresolvedReferences
from ddaflow.core.engine.flow_runner import *
# noinspection PyUnresolvedReferences
from ddaflow.core.engine.task_runner import *
# noinspection PyUnresolvedReferences
from ddaflow.core.flow import *
# noinspection PyUnresolvedReferences
from ddaflow.core.operators import *
# noinspection PyUnresolvedReferences
from ddaflow.core.task import *
# noinspection PyUnresolvedReferences
from ddaflow.core.models import *
# noinspection PyUnresolvedReferences
from ddaflow.core.utility.cache import *
# noinspection PyUnresolvedReferences
from ddaflow.core.utility.executor import *
# noinspection PyUnresolvedReferences
from ddaflow.core.utility.state import *
# noinspection PyUnresolvedReferences
from ddaflow.core.utility.target import *
# noinspection PyUnresolvedReferences
from ddaflow.core.utils import *
# noinspection PyUnresolvedReferences
from ddaflow.tasks import *
# noinspection PyUnresolvedReferences
from ddaflow.pipeline.config import *
# noinspection PyUnresolvedReferences
from ddaflow.pipeline.records import *
# noinspection PyUnresolvedReferences
from ddaflow.pipeline.inputs import *
# noinspection PyUnresolvedReferences
from ddaflow.pipeline.checks import *
# noinspection PyUnresolvedReferences
from ddaflow.pipeline.builder import *


def run(flow: Flow, context: dict = None, **kwargs) -> RunReport:
    """Run a built flow in the current process and return its report. A failed run raises the exception that
    started the failure.

    Parameters
    ----------
    flow
        the built flow, i.e. `my_flow()`
    context
        updates of the global context used while running, for example `{'task_config': {'retry': 1}}`
    kwargs
        passed to FlowRunner
    """
    assert flow.state == Flow.INITIALIZED, "The flow must be initialized and not being executed yet."
    with ddaflow.context(context or {}) as ctx:
        merged_context = ctx.to_dict()

    runner = FlowRunner(flow, **kwargs)
    runner.run(context=merged_context)
    return runner.report
