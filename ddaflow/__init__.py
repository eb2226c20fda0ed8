__version__ = '0.1.0'

from ddaflow.context import context, ddaflow_logger
