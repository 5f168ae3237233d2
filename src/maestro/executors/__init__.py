from maestro.executors.base import (
    Executor,
    ExecutorFault,
    OracleExecutor,
    SynthesisFailure,
)
from maestro.executors.code import CodeAgent
from maestro.executors.declarative import DeclarativeExecutor, ExecutorSpec
from maestro.executors.file import FileAgent
from maestro.executors.fix import FixAgent
from maestro.executors.memory import MemoryRecorderAgent
from maestro.executors.registry import AgentRegistry
from maestro.executors.research import ResearchAgent
from maestro.executors.synthesizer import ExecutorSynthesizer

__all__ = [
    "AgentRegistry",
    "CodeAgent",
    "DeclarativeExecutor",
    "Executor",
    "ExecutorFault",
    "ExecutorSpec",
    "ExecutorSynthesizer",
    "FileAgent",
    "FixAgent",
    "MemoryRecorderAgent",
    "OracleExecutor",
    "ResearchAgent",
    "SynthesisFailure",
]
