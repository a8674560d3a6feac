from __future__ import annotations

import argparse
import json
import logging
import sys
from collections import defaultdict
from pathlib import Path
from typing import Dict, List, Optional

from .config import PipelineDefinition, load_definition, resolve_inputs
from .errors import PipelineError
from .models import TriggerEvent
from .pipelines import get_pipeline, list_pipelines, run_pipeline
from .secrets import SecretMaskFilter, describe_secret, list_secrets, use_dotenv
from .versioning import DEFAULT_NIGHTLY_CHANNEL, DEFAULT_STABLE_CHANNEL, read_version, resolve_version

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT, stream=sys.stderr)
    for handler in logging.getLogger().handlers:
        if not any(isinstance(item, SecretMaskFilter) for item in handler.filters):
            handler.addFilter(SecretMaskFilter())


def _load_env_file(workspace_root: Path, env_file: Optional[str]) -> None:
    path = Path(env_file) if env_file else workspace_root / ".env"
    if env_file or path.exists():
        use_dotenv(path)


def _parse_pipeline_inputs(values: list[str]) -> Dict[str, List[str]]:
    """Group repeated ``--input key=value`` flags by key."""

    grouped: Dict[str, List[str]] = defaultdict(list)
    for entry in values:
        key, sep, value = entry.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"--input expects key=value with a non-empty key, got '{entry}'")
        grouped[key.strip()].append(value.strip())
    return dict(grouped)


def _add_env_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--workspace-root", default=".")
    parser.add_argument("--env-file", help="dotenv file with secrets (default: <workspace-root>/.env)")
    parser.add_argument("-v", "--verbose", action="store_true")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="divvun-release", description="Release pipeline orchestration")
    subparsers = parser.add_subparsers(dest="command", required=True)

    pipeline_cmd = subparsers.add_parser("pipeline", help="Pipeline registry commands")
    pipeline_subparsers = pipeline_cmd.add_subparsers(dest="pipeline_command", required=True)

    pipeline_subparsers.add_parser("list", help="List registered pipelines")

    pipeline_show = pipeline_subparsers.add_parser("show", help="Show a pipeline definition")
    pipeline_show_source = pipeline_show.add_mutually_exclusive_group(required=True)
    pipeline_show_source.add_argument("--pipeline", dest="pipeline_slug")
    pipeline_show_source.add_argument("--file", dest="pipeline_file")

    pipeline_run = pipeline_subparsers.add_parser("run", help="Execute a pipeline")
    pipeline_run_source = pipeline_run.add_mutually_exclusive_group(required=True)
    pipeline_run_source.add_argument("--pipeline", dest="pipeline_slug")
    pipeline_run_source.add_argument("--file", dest="pipeline_file")
    pipeline_run.add_argument("--input", action="append")
    pipeline_run.add_argument("--dry-run", action=argparse.BooleanOptionalAction, default=False)
    _add_env_arguments(pipeline_run)

    version_cmd = subparsers.add_parser("version", help="Compute the release version and channel")
    version_cmd.add_argument("--workspace-root", default=".")
    version_cmd.add_argument("--manifest", default="Cargo.toml")
    version_cmd.add_argument("--ref", help="Git ref (default: GITHUB_REF)")
    version_cmd.add_argument("--stable-channel", default=DEFAULT_STABLE_CHANNEL)
    version_cmd.add_argument("--nightly-channel", default=DEFAULT_NIGHTLY_CHANNEL)

    secrets_cmd = subparsers.add_parser("secrets", help="Inspect secret resolution")
    secrets_subparsers = secrets_cmd.add_subparsers(dest="secrets_command", required=True)
    secrets_list = secrets_subparsers.add_parser("list", help="List secrets declared by a pipeline")
    secrets_list.add_argument("--pipeline", dest="pipeline_slug")
    secrets_list.add_argument("--file", dest="pipeline_file")
    secrets_list.add_argument("--workspace-root", default=".")
    secrets_list.add_argument("--env-file")

    args = parser.parse_args(argv)

    if args.command == "pipeline":
        if args.pipeline_command == "list":
            print(json.dumps([definition.to_dict() for definition in list_pipelines()], indent=2))
            return 0

        try:
            definition = _definition(args)
        except (KeyError, PipelineError) as exc:
            print(str(exc), file=sys.stderr)
            return 2

        if args.pipeline_command == "show":
            print(json.dumps(definition.model_dump(mode="json", by_alias=True, exclude_none=True), indent=2))
            return 0

        if args.pipeline_command == "run":
            return _run_pipeline(args, definition)

    if args.command == "version":
        return _run_version(args)

    if args.command == "secrets" and args.secrets_command == "list":
        _load_env_file(Path(args.workspace_root).resolve(), args.env_file)
        if args.pipeline_slug or args.pipeline_file:
            try:
                _definition(args)
            except (KeyError, PipelineError) as exc:
                print(str(exc), file=sys.stderr)
                return 2
        payload = [describe_secret(spec.name) for spec in list_secrets()]
        print(json.dumps(payload, indent=2))
        return 0

    parser.error("Unknown command")
    return 2


def _definition(args: argparse.Namespace) -> PipelineDefinition:
    if getattr(args, "pipeline_file", None):
        return load_definition(Path(args.pipeline_file))
    return get_pipeline(args.pipeline_slug)


def _run_pipeline(args: argparse.Namespace, definition: PipelineDefinition) -> int:
    _configure_logging(args.verbose)
    workspace_root = Path(args.workspace_root).resolve()
    _load_env_file(workspace_root, args.env_file)

    try:
        inputs = resolve_inputs(definition, _parse_pipeline_inputs(args.input or []))
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 2

    try:
        run = run_pipeline(
            definition,
            inputs=inputs,
            workspace_root=workspace_root,
            dry_run=args.dry_run,
            trigger=TriggerEvent.from_env(),
        )
    except PipelineError as exc:
        print(str(exc), file=sys.stderr)
        return 2

    print(json.dumps(run.to_dict(), indent=2))
    if run.failed_step:
        print(f"Pipeline failed at step '{run.failed_step}': {run.reason}", file=sys.stderr)
    return run.exit_code


def _run_version(args: argparse.Namespace) -> int:
    manifest = Path(args.workspace_root).resolve() / args.manifest
    ref = args.ref if args.ref is not None else TriggerEvent.from_env().ref
    try:
        info = resolve_version(
            read_version(manifest),
            ref=ref,
            stable_channel=args.stable_channel,
            nightly_channel=args.nightly_channel,
            source=manifest.name,
        )
    except (OSError, KeyError, ValueError) as exc:
        print(str(exc), file=sys.stderr)
        return 2
    print(json.dumps(info.to_dict(), indent=2))
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
