from dohagent.pipeline.extract import *
from dohagent.pipeline.gateway import *
from dohagent.pipeline.message import *
from dohagent.pipeline.orchestrator import *
from dohagent.pipeline.response import *
from dohagent.pipeline.upstream import *
