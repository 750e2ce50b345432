"""Bundling policy and server environment derived from the build target."""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path

from dotenv import dotenv_values
from pydantic import ValidationError

from buildserve.constants import NODE_OPTIONS_ENV, NODE_RESOLUTION_FLAG
from buildserve.errors import ConfigurationMissingError
from buildserve.logging import ServeLogComponent, get_logger
from buildserve.models import (
    BuildTargetOptions,
    BuildTargetPolicy,
    Environment,
    ModuleFormat,
    ServeOptions,
    TargetOptionsReader,
    TargetRef,
)

logger = get_logger(ServeLogComponent.POLICY)


def read_build_options(
    build_target: TargetRef, reader: TargetOptionsReader
) -> BuildTargetOptions:
    """Read and validate the options of a build target."""
    raw = reader.read_target_options(build_target)
    try:
        return BuildTargetOptions.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationMissingError(str(build_target), str(e)) from e


def resolve_build_target_policy(
    build_target: TargetRef,
    reader: TargetOptionsReader,
    *,
    experimental_node_resolution: bool = False,
) -> BuildTargetPolicy:
    """Derive the bundling policy of ``build_target``.

    Warns when ESM output is not fully bundled, since the runtime then has to
    resolve relative imports that lack file extensions.
    """
    options = read_build_options(build_target, reader)

    policy = BuildTargetPolicy(
        has_esm=ModuleFormat.esm.value in options.format,
        is_bundled=options.bundle,
        external=frozenset(options.external) if options.external is not None else None,
    )

    if policy.has_esm and policy.is_partially_bundled:
        _warn_esm_extension_resolution(experimental_node_resolution)

    logger.debug(
        f"Resolved policy for {build_target}: esm={policy.has_esm} "
        f"bundled={policy.is_bundled} external={sorted(policy.external or [])}"
    )
    return policy


def _warn_esm_extension_resolution(experimental_node_resolution: bool) -> None:
    state = "has been" if experimental_node_resolution else "can be"
    logger.warning(
        "\n".join(
            [
                "WARNING: nodejs requires that relative ESM import statements use file extensions.",
                "If any part of your code is not bundled, ensure that your relative imports end with file extensions.",
                "Not doing so will result in [ERR_MODULE_NOT_FOUND] errors when executing the built esm application.",
                "  https://nodejs.org/docs/latest-v18.x/api/esm.html#mandatory-file-extensions",
                f"Alternatively, from nodejs12 to nodejs18, the '{NODE_RESOLUTION_FLAG}' flag resolves them.",
                f"This behaviour {state} enabled by setting 'experimentalNodeResolution: true' in the serve target options.",
            ]
        )
    )


def build_server_env(
    policy: BuildTargetPolicy,
    options: ServeOptions,
    *,
    base_env: Mapping[str, str] | None = None,
    workspace_root: Path | None = None,
) -> Environment:
    """Environment for the server process.

    A copy of ``base_env`` (the current environment by default), overlaid with
    the serve target's env file, plus the node resolution flag when ESM output
    asks for it.
    """
    env: Environment = dict(os.environ if base_env is None else base_env)

    if options.env_file:
        env_path = Path(options.env_file)
        if workspace_root is not None and not env_path.is_absolute():
            env_path = workspace_root / env_path
        if env_path.exists():
            for key, value in dotenv_values(env_path).items():
                if value is not None:
                    env[key] = value
        else:
            logger.warning(f"Env file {env_path} does not exist, skipping")

    if policy.has_esm and options.experimental_node_resolution:
        existing = env.get(NODE_OPTIONS_ENV, "")
        env[NODE_OPTIONS_ENV] = f"{NODE_RESOLUTION_FLAG} {existing}".strip()

    return env
