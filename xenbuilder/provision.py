"""Guest provisioners run over the SSH communicator."""

from __future__ import annotations

import shlex
from typing import Any, Dict, List, Mapping, Sequence

from xenbuilder.exceptions import BuildError, StepError


class Provisioner:
    type_name = ""

    def describe(self) -> str:
        return self.type_name

    def provision(self, ui, communicator) -> None:
        raise NotImplementedError


class ShellProvisioner(Provisioner):
    """Run inline shell commands one at a time, stopping at the first failure."""

    type_name = "shell"

    def __init__(self, inline: Sequence[str], environment_vars: Sequence[str] = ()) -> None:
        self.inline = list(inline)
        self.environment_vars = list(environment_vars)

    @classmethod
    def from_options(cls, options: Mapping[str, Any], index: int) -> "ShellProvisioner":
        unknown = sorted(set(options) - {"inline", "environment_vars"})
        if unknown:
            raise BuildError(f"provisioners[{index}]: unknown option(s): {', '.join(unknown)}")
        inline = options.get("inline")
        if not isinstance(inline, list) or not inline or not all(isinstance(item, str) for item in inline):
            raise BuildError(f"provisioners[{index}]: 'inline' must be a non-empty list of strings")
        env = options.get("environment_vars") or []
        if not isinstance(env, list) or not all(isinstance(item, str) and "=" in item for item in env):
            raise BuildError(f"provisioners[{index}]: 'environment_vars' must be a list of KEY=VALUE strings")
        return cls(inline, env)

    def _command(self, command: str) -> str:
        if not self.environment_vars:
            return command
        exports = " ".join(
            f"{key}={shlex.quote(value)}" for key, value in (item.split("=", 1) for item in self.environment_vars)
        )
        return f"{exports} sh -c {shlex.quote(command)}"

    def provision(self, ui, communicator) -> None:
        for command in self.inline:
            ui.say(f"Running: {command}")
            status, out, err = communicator.execute(self._command(command))
            for line in out.splitlines():
                ui.say(f"  {line}")
            if status != 0:
                detail = err.strip() or "no error output"
                raise StepError(f"Command '{command}' exited with status {status}: {detail}")


PROVISIONER_TYPES: Dict[str, type] = {
    ShellProvisioner.type_name: ShellProvisioner,
}


def load_provisioners(raw: Sequence[Any]) -> List[Provisioner]:
    """Build provisioners from the ``provisioners`` template section."""
    provisioners: List[Provisioner] = []
    for index, entry in enumerate(raw):
        if not isinstance(entry, dict):
            raise BuildError(f"provisioners[{index}] must be a mapping")
        kind = entry.get("type")
        factory = PROVISIONER_TYPES.get(kind) if isinstance(kind, str) else None
        if factory is None:
            raise BuildError(f"provisioners[{index}]: unknown provisioner type '{kind}'")
        options = {key: value for key, value in entry.items() if key != "type"}
        provisioners.append(factory.from_options(options, index))
    return provisioners
