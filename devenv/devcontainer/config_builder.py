"""Turn a devcontainer descriptor into the container spec the runtime needs.

Nothing here touches the store or the runtime; the reconciler decides ports
and env files and passes them in.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from ..config import CONTAINER_LABEL_PREFIX
from .parser import DevcontainerConfig, resolve_env_vars, resolve_image, resolve_post_create_command


@dataclass
class ContainerSpec:
    name: str
    image: str
    workspace_dir: str | None
    env: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    port_bindings: dict[int, int] = field(default_factory=dict)
    post_create_command: str | None = None

    @property
    def env_list(self) -> list[str]:
        return [f"{key}={value}" for key, value in self.env.items()]


def build_container_spec(
    config: DevcontainerConfig | None,
    *,
    project_name: str,
    environment_name: str,
    workspace_dir: str | None,
    port_bindings: dict[int, int],
    env_overrides: dict[str, str] | None = None,
) -> ContainerSpec:
    env = resolve_env_vars(config)
    env.update(env_overrides or {})
    return ContainerSpec(
        name=environment_name,
        image=resolve_image(config),
        workspace_dir=workspace_dir,
        env=env,
        labels={
            f"{CONTAINER_LABEL_PREFIX}.project": project_name,
            f"{CONTAINER_LABEL_PREFIX}.environment": environment_name,
        },
        port_bindings=dict(port_bindings),
        post_create_command=resolve_post_create_command(config),
    )
