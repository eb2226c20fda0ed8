from ddaflow.tasks.shell import *
