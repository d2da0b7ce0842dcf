"""Cloud-init rendering for runner droplets."""

from __future__ import annotations

import shlex
from pathlib import Path
from typing import Optional

from jinja2 import Environment, FileSystemLoader, StrictUndefined

from ..common.schemas import RunnerProvisioningRequest

DEFAULT_TEMPLATE_DIR = Path(__file__).parent / "templates"
DEFAULT_TEMPLATE_NAME = "runner.yaml.j2"


class BootstrapRenderer:
    """Renders the user-data script a runner droplet executes on first boot.

    Rendering is a pure function of the provisioning request; the raw
    registration token never appears in the output, only the name of the
    parameter holding it.
    """

    def __init__(self, template_path: Optional[Path] = None) -> None:
        if template_path is None:
            directory, name = DEFAULT_TEMPLATE_DIR, DEFAULT_TEMPLATE_NAME
        else:
            directory, name = template_path.parent, template_path.name
        env = Environment(
            loader=FileSystemLoader(str(directory)),
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
        )
        env.filters["shquote"] = shlex.quote
        self._template = env.get_template(name)

    def render(self, request: RunnerProvisioningRequest) -> str:
        return self._template.render(
            runner_name=request.runner_name,
            runner_token_param=request.token_parameter,
            runner_labels=request.labels_csv,
            runner_org=request.owner,
            runner_repo=request.repository,
            runner_version=request.runner_version,
            callback_url=request.callback_url,
            callback_secret_param=request.callback_secret_parameter,
        )
