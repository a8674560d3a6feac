"""Release pipeline orchestration: provision, build, sign, package and publish."""

__version__ = "0.1.0"
from .errors import (
    BuildError,
    PackagingError,
    PipelineError,
    ProvisionError,
    PublishError,
    ReleaseError,
    SigningError,
)
from .models import Artifact, Package, PublishReceipt, PublishTarget, TriggerEvent
from .pipeline import Orchestrator, PipelineRun, RunState, Step, StepContext, StepResult, StepStatus
from .config import PipelineDefinition, StepDefinition, load_definition
from .pipelines import get_pipeline, list_pipelines, register_pipeline, run_pipeline
from .secrets import SecretHandle, describe_secret, list_secrets, use_dotenv

__all__ = [
    "__version__",
    "Artifact",
    "BuildError",
    "Orchestrator",
    "Package",
    "PackagingError",
    "PipelineDefinition",
    "PipelineError",
    "PipelineRun",
    "ProvisionError",
    "PublishError",
    "PublishReceipt",
    "PublishTarget",
    "ReleaseError",
    "RunState",
    "SecretHandle",
    "SigningError",
    "Step",
    "StepContext",
    "StepDefinition",
    "StepResult",
    "StepStatus",
    "TriggerEvent",
    "describe_secret",
    "get_pipeline",
    "list_pipelines",
    "list_secrets",
    "load_definition",
    "register_pipeline",
    "run_pipeline",
    "use_dotenv",
]
