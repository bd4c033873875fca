"""
BuildRunner: run an external build with values produced by other stacks.
"""

import logging
import os
import subprocess
from pathlib import Path
from typing import Any, Mapping

from moraine.core.stack import Stack
from moraine.errors import BuildFailed, DependencyUnresolved

logger = logging.getLogger(__name__)


class BuildRunner:
    """
    Runs a stack's build step just before it deploys.

    The step's ``env`` maps environment variable names to resolved stack
    parameters, e.g. the frontend bundle is built with the backend's
    public endpoint.

    Example:
        runner = BuildRunner(base_dir=Path("deploy"))
        runner.run(frontend_stack, {"ApiEndpoint": "https://api.example.com/"})
    """

    def __init__(self, base_dir: str | Path | None = None, environ: Mapping[str, str] | None = None):
        self.base_dir = Path(base_dir) if base_dir is not None else Path.cwd()
        self.environ = dict(os.environ if environ is None else environ)

    def run(self, stack: Stack, parameters: Mapping[str, Any]) -> Path | None:
        """
        Run the build step, if the stack declares one.

        Returns:
            Path of the produced artifact directory, if one is declared

        Raises:
            DependencyUnresolved: If an env binding names an unresolved parameter
            BuildFailed: If the build exits non-zero or produces no artifact
        """
        step = stack.descriptor.build
        if step is None:
            return None

        env = dict(self.environ)
        for variable, parameter in step.env.items():
            if parameter not in parameters:
                raise DependencyUnresolved(
                    f"Build variable {variable} needs parameter '{parameter}', which is not resolved",
                    stack=stack.name,
                )
            env[variable] = str(parameters[parameter])

        cwd = (self.base_dir / step.cwd).resolve()
        if not cwd.is_dir():
            raise BuildFailed(f"Build directory not found: {cwd}", stack=stack.name)

        logger.info("Building %s: %s (in %s)", stack.name, " ".join(step.command), cwd)
        try:
            result = subprocess.run(step.command, cwd=cwd, env=env, capture_output=True, text=True)
        except FileNotFoundError as e:
            raise BuildFailed(f"Build command '{step.command[0]}' not found", stack=stack.name) from e

        if result.returncode != 0:
            message = f"Build exited with code {result.returncode}"
            if result.stderr:
                message += f"\n{result.stderr.strip()[-2000:]}"
            raise BuildFailed(message, stack=stack.name)

        if step.artifact_dir is None:
            return None

        artifact = cwd / step.artifact_dir
        if not artifact.is_dir():
            raise BuildFailed(f"Build finished but {artifact} was not produced", stack=stack.name)
        logger.info("Build for %s produced %s", stack.name, artifact)
        return artifact
