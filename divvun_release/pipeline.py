"""Sequential, fail-fast pipeline orchestration.

A pipeline is an ordered list of :class:`Step` records. The
:class:`Orchestrator` runs them one at a time. Each step's outputs are
published under the step's name and are readable (never writable) by the
steps after it. The first failure moves the run to ``failed`` and every
remaining step is recorded as ``skipped`` without running.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .errors import PipelineError, ReleaseError
from .models import TriggerEvent
from .secrets import SecretHandle

logger = logging.getLogger(__name__)

_TEMPLATE_RE = re.compile(r"\$\{\{\s*([^}]*?)\s*\}\}")


class RunState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class StepStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class StepContext:
    """Everything a step action may read."""

    name: str
    options: Mapping[str, object]
    env: Mapping[str, str]
    outputs: Mapping[str, Mapping[str, object]]
    inputs: Mapping[str, object]
    trigger: TriggerEvent
    workspace_root: Path
    timeout: Optional[float] = None

    def get(self, key: str, default: Optional[object] = None) -> Optional[object]:
        value = self.options.get(key)
        return default if value is None or value == "" else value

    def require(self, key: str) -> object:
        value = self.get(key)
        if value is None:
            raise PipelineError(f"Step '{self.name}' requires option '{key}'.")
        return value

    def get_list(self, key: str) -> List[str]:
        value = self.options.get(key)
        if value is None or value == "":
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple)):
            return [str(item) for item in value]
        return [str(value)]

    def path(self, value: object) -> Path:
        path = Path(str(value))
        return path if path.is_absolute() else self.workspace_root / path


Action = Callable[[StepContext], Optional[Mapping[str, object]]]


@dataclass(frozen=True)
class Step:
    name: str
    action: Action
    options: Mapping[str, object] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    uses: Optional[str] = None
    timeout: Optional[float] = None
    retries: int = 0
    retry_delay: float = 0.0


@dataclass(frozen=True)
class StepResult:
    name: str
    status: StepStatus
    outputs: Mapping[str, object] = field(default_factory=lambda: MappingProxyType({}))
    error: Optional[str] = None
    error_type: Optional[str] = None
    attempts: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def ok(self) -> bool:
        return self.status is StepStatus.SUCCEEDED

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "status": self.status.value,
            "outputs": {key: jsonable(value) for key, value in self.outputs.items()},
            "error": self.error,
            "error_type": self.error_type,
            "attempts": self.attempts,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class PipelineRun:
    """One execution of a pipeline. Read-only once it reaches a terminal state."""

    def __init__(
        self,
        pipeline: str,
        trigger: TriggerEvent,
        inputs: Optional[Mapping[str, object]] = None,
    ) -> None:
        self.pipeline = pipeline
        self.trigger = trigger
        self.inputs: Mapping[str, object] = MappingProxyType(dict(inputs or {}))
        self.state = RunState.PENDING
        self.version: Optional[str] = None
        self.channel: Optional[str] = None
        self.current_step: Optional[str] = None
        self.failed_step: Optional[str] = None
        self.failed_index: Optional[int] = None
        self.reason: Optional[str] = None
        self.created_at = datetime.now(timezone.utc)
        self.finished_at: Optional[datetime] = None
        self._results: List[StepResult] | Tuple[StepResult, ...] = []
        self._outputs: Dict[str, Mapping[str, object]] = {}
        self._sealed = False

    def __setattr__(self, name: str, value: object) -> None:
        if getattr(self, "_sealed", False):
            raise AttributeError(f"PipelineRun is complete; cannot set '{name}'.")
        super().__setattr__(name, value)

    @property
    def results(self) -> Tuple[StepResult, ...]:
        return tuple(self._results)

    @property
    def outputs(self) -> Mapping[str, Mapping[str, object]]:
        return MappingProxyType(self._outputs)

    @property
    def complete(self) -> bool:
        return self.state in (RunState.SUCCEEDED, RunState.FAILED)

    @property
    def exit_code(self) -> int:
        return 0 if self.state is RunState.SUCCEEDED else 1

    def result(self, name: str) -> Optional[StepResult]:
        return next((item for item in self._results if item.name == name), None)

    def _record(self, result: StepResult) -> None:
        if self._sealed:
            raise AttributeError("PipelineRun is complete; cannot record results.")
        self._results.append(result)
        if result.ok:
            self._outputs[result.name] = result.outputs

    def _seal(self) -> None:
        self._results = tuple(self._results)
        self.finished_at = datetime.now(timezone.utc)
        self._sealed = True

    def to_dict(self) -> Dict[str, object]:
        return {
            "pipeline": self.pipeline,
            "state": self.state.value,
            "trigger": self.trigger.to_dict(),
            "version": self.version,
            "channel": self.channel,
            "failed_step": self.failed_step,
            "failed_index": self.failed_index,
            "reason": self.reason,
            "created_at": self.created_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "steps": [item.to_dict() for item in self._results],
        }


class Orchestrator:
    """Interpret a list of steps with a fail-fast policy."""

    def __init__(
        self,
        steps: Sequence[Step],
        *,
        name: str = "pipeline",
        env: Optional[Mapping[str, str]] = None,
        workspace_root: Optional[Path] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        seen: set[str] = set()
        for step in steps:
            if step.name in seen:
                raise PipelineError(f"Duplicate step name '{step.name}' in pipeline '{name}'.")
            seen.add(step.name)
        self.steps = list(steps)
        self.name = name
        self.env = dict(env or {})
        self.workspace_root = (workspace_root or Path.cwd()).resolve()
        self._sleep = sleep

    def run(
        self,
        *,
        trigger: Optional[TriggerEvent] = None,
        inputs: Optional[Mapping[str, object]] = None,
    ) -> PipelineRun:
        run = PipelineRun(self.name, trigger or TriggerEvent.from_env(), inputs)
        run.state = RunState.RUNNING
        logger.info("Pipeline '%s' started (%d steps, trigger=%s)", self.name, len(self.steps), run.trigger.name)

        for index, step in enumerate(self.steps):
            if run.state is RunState.FAILED:
                run._record(StepResult(name=step.name, status=StepStatus.SKIPPED))
                continue

            run.current_step = step.name
            result = self._execute(step, run)
            run._record(result)
            if result.ok:
                if run.version is None and isinstance(result.outputs.get("version"), str):
                    run.version = result.outputs["version"]
                if run.channel is None and isinstance(result.outputs.get("channel"), str):
                    run.channel = result.outputs["channel"]
                continue

            run.state = RunState.FAILED
            run.failed_step = step.name
            run.failed_index = index
            run.reason = result.error
            logger.error("Step %d '%s' failed: %s", index + 1, step.name, result.error)

        if run.state is RunState.RUNNING:
            run.state = RunState.SUCCEEDED
        run.current_step = None
        run._seal()
        logger.info("Pipeline '%s' finished: %s", self.name, run.state.value)
        return run

    def _execute(self, step: Step, run: PipelineRun) -> StepResult:
        started_at = datetime.now(timezone.utc)
        attempts = 0
        logger.info("Step '%s' started", step.name)
        while True:
            attempts += 1
            try:
                outputs = self._invoke(step, run)
            except ReleaseError as exc:
                if exc.transient and attempts <= step.retries:
                    delay = step.retry_delay
                    logger.warning(
                        "Step '%s' attempt %d failed (%s); retrying in %.1fs", step.name, attempts, exc, delay
                    )
                    self._sleep(delay)
                    continue
                return self._failed(step, exc, attempts, started_at)
            except Exception as exc:
                logger.exception("Step '%s' raised an unexpected error", step.name)
                return self._failed(step, exc, attempts, started_at)

            logger.info("Step '%s' succeeded", step.name)
            return StepResult(
                name=step.name,
                status=StepStatus.SUCCEEDED,
                outputs=freeze(outputs),
                attempts=attempts,
                started_at=started_at,
                finished_at=datetime.now(timezone.utc),
            )

    def _invoke(self, step: Step, run: PipelineRun) -> Dict[str, object]:
        visible = run.outputs
        options = resolve_templates(step.options, visible, run.inputs)
        env = {**self.env, **{key: str(value) for key, value in resolve_templates(step.env, visible, run.inputs).items()}}
        context = StepContext(
            name=step.name,
            options=MappingProxyType(dict(options)),
            env=MappingProxyType(env),
            outputs=visible,
            inputs=run.inputs,
            trigger=run.trigger,
            workspace_root=self.workspace_root,
            timeout=step.timeout,
        )
        produced = step.action(context) or {}
        if not isinstance(produced, Mapping):
            raise PipelineError(f"Step '{step.name}' returned {type(produced).__name__}, expected a mapping.")
        if _contains_secret(produced):
            raise PipelineError(f"Step '{step.name}' tried to publish a secret through its outputs.")
        return dict(produced)

    @staticmethod
    def _failed(step: Step, exc: BaseException, attempts: int, started_at: datetime) -> StepResult:
        return StepResult(
            name=step.name,
            status=StepStatus.FAILED,
            error=str(exc) or exc.__class__.__name__,
            error_type=exc.__class__.__name__,
            attempts=attempts,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
        )


def resolve_templates(
    value: object,
    outputs: Mapping[str, Mapping[str, object]],
    inputs: Mapping[str, object],
) -> object:
    """Resolve ``${{ steps.<name>.outputs.<key> }}`` and ``${{ inputs.<key> }}``.

    A string that is exactly one expression resolves to the referenced
    value itself (which may be an object); otherwise expressions are
    interpolated as text.
    """

    if isinstance(value, str):
        match = _TEMPLATE_RE.fullmatch(value.strip())
        if match:
            return _lookup(match.group(1), outputs, inputs)
        return _TEMPLATE_RE.sub(lambda m: _interpolate(m.group(1), outputs, inputs), value)
    if isinstance(value, Mapping):
        return {key: resolve_templates(item, outputs, inputs) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve_templates(item, outputs, inputs) for item in value]
    return value


def _interpolate(expression: str, outputs: Mapping[str, Mapping[str, object]], inputs: Mapping[str, object]) -> str:
    value = _lookup(expression, outputs, inputs)
    if value is None:
        raise PipelineError(f"'{expression}' has no value and cannot be interpolated into text.")
    return str(value)


def _lookup(expression: str, outputs: Mapping[str, Mapping[str, object]], inputs: Mapping[str, object]) -> object:
    parts = expression.split(".")
    if len(parts) == 2 and parts[0] == "inputs":
        if parts[1] not in inputs:
            raise PipelineError(f"Unknown input '{parts[1]}' in '{expression}'.")
        return inputs[parts[1]]
    if len(parts) == 4 and parts[0] == "steps" and parts[2] == "outputs":
        step_name, key = parts[1], parts[3]
        if step_name not in outputs:
            raise PipelineError(f"Outputs of step '{step_name}' are not available to this step.")
        if key not in outputs[step_name]:
            raise PipelineError(f"Step '{step_name}' has no output '{key}'.")
        return outputs[step_name][key]
    raise PipelineError(f"Unsupported expression '{expression}'.")


def freeze(value: object) -> object:
    """Return a read-only view of ``value``: mappings become proxies, sequences tuples."""

    if isinstance(value, Mapping):
        return MappingProxyType({key: freeze(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(item) for item in value)
    if isinstance(value, (set, frozenset)):
        return frozenset(freeze(item) for item in value)
    return value


def _contains_secret(value: object) -> bool:
    if isinstance(value, SecretHandle):
        return True
    if isinstance(value, Mapping):
        return any(_contains_secret(item) for item in value.values())
    if isinstance(value, (list, tuple, set)):
        return any(_contains_secret(item) for item in value)
    return False


def jsonable(value: object) -> object:
    """Convert step outputs to JSON-friendly values for reports."""

    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Mapping):
        return {str(key): jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [jsonable(item) for item in value]
    return value
