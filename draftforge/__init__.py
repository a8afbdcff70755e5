from draftforge.job import GenerationJobDriver, ProgressReporter
from draftforge.schemas import GenerationRequest, GenerationResult

__all__ = ["GenerationJobDriver", "GenerationRequest", "GenerationResult", "ProgressReporter"]
