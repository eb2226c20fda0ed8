# Defaults used at build time. During a run, flows and tasks enter their own context built upon these values.
DEFAULT_CONTEXT = {
    'default_flow_config': {
        'log_stdout': False,
        'log_stderr': False,
    },
    'default_task_config': {
        'executor_type': 'local',
        'cache_type': 'local',
        'timeout': 0,
        'log_stdout': False,
        'log_stderr': False,
    },
    'logging': {
        'fmt': "[{levelname}] [{asctime}] [{task_name}|{run_key:.8}] {message}",
        'datefmt': "%Y-%m-%d %H:%M:%S",
        'style': '{',
        'level': 'INFO',
        'buffer_size': 10,
        'context_attrs': [
            'flow_id',
            'flow_name',
            'task_id',
            'task_name',
            'run_key',
        ]
    },
    'caches': {
        'local': {},
    },
    'executors': [
        {
            'executor_type': 'local'
        },
        {
            'executor_type': 'dask',
            'address': None,
            'cluster_class': None,
            'cluster_kwargs': None,
            'adapt_kwargs': None,
            'client_kwargs': None,
            'debug': False
        }
    ]
}
