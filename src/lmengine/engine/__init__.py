"""Engine: scheduling, step execution, sampling, and request lifecycle."""

from lmengine.engine.backend import ForwardBatch, ModelBackend, TorchModelBackend
from lmengine.engine.config import EngineConfig
from lmengine.engine.engine import Engine, GenerationResult
from lmengine.engine.executor import DecodeStepExecutor, StepInput, StepResult
from lmengine.engine.request import FinishReason, OutputEvent, Request, RequestState
from lmengine.engine.sampler import SamplingParams, sample_token
from lmengine.engine.scheduler import ContinuousScheduler
from lmengine.engine.stop import StopChecker, StopSequenceMatcher

__all__ = [
    "ContinuousScheduler",
    "DecodeStepExecutor",
    "Engine",
    "EngineConfig",
    "FinishReason",
    "ForwardBatch",
    "GenerationResult",
    "ModelBackend",
    "OutputEvent",
    "Request",
    "RequestState",
    "SamplingParams",
    "StepInput",
    "StepResult",
    "StopChecker",
    "StopSequenceMatcher",
    "TorchModelBackend",
    "sample_token",
]
