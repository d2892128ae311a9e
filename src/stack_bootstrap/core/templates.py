"""Template provider seam.

Template content is produced outside the engine; the engine only submits
it. ``DirectoryTemplateProvider`` covers the CLI case of one Jinja2
template file per stack kind rendered with the descriptor's fields.
"""

from pathlib import Path
from typing import Any, Optional, Protocol

import jinja2

from stack_bootstrap.core.contracts import BaseStackDeployment, BucketPolicyData, StackKind
from stack_bootstrap.core.errors import TemplateRenderError

TEMPLATE_SUFFIXES = (".json", ".yaml", ".yml")


class TemplateProvider(Protocol):
    """Produces the template body for a stack."""

    def render(self, stack: BaseStackDeployment, merged: Optional[BucketPolicyData]) -> str: ...


class DirectoryTemplateProvider:
    """Renders ``<kind>.json|yaml|yml`` from a directory with Jinja2.

    Templates see every descriptor field (``{{ stack_name }}``,
    ``{{ account_id }}``, ...), ``stack_kind``, and for the Org stack
    ``allowed_account_ids``; use ``| tojson`` for lists. Undefined
    variables are errors. CloudFormation ``${AWS::Region}`` references
    are plain text to Jinja2 and pass through.
    """

    def __init__(self, directory: Path, extra: Optional[dict[str, Any]] = None):
        self.directory = Path(directory)
        self.extra = extra or {}
        self.environment = jinja2.Environment(
            loader=jinja2.FileSystemLoader(str(self.directory)),
            undefined=jinja2.StrictUndefined,
            keep_trailing_newline=True,
        )

    def template_path(self, kind: StackKind) -> Path:
        for suffix in TEMPLATE_SUFFIXES:
            path = self.directory / f"{kind.value.lower()}{suffix}"
            if path.exists():
                return path
        raise FileNotFoundError(
            f"No template for {kind.value} stacks in {self.directory} "
            f"(expected {kind.value.lower()}.json, .yaml or .yml)"
        )

    def render(self, stack: BaseStackDeployment, merged: Optional[BucketPolicyData]) -> str:
        path = self.template_path(stack.stack_kind)
        try:
            template = self.environment.get_template(path.name)
            return template.render(**self.variables(stack, merged))
        except jinja2.TemplateError as e:
            raise TemplateRenderError(str(path), str(e)) from e

    def variables(self, stack: BaseStackDeployment, merged: Optional[BucketPolicyData]) -> dict[str, Any]:
        fields = stack.model_dump(mode="json")
        fields["stack_kind"] = stack.stack_kind.value
        if merged is not None:
            fields["allowed_account_ids"] = merged.allowed_account_ids
        fields.update(self.extra)
        return fields
