"""AWS CLI tool."""

from __future__ import annotations

import asyncio
import json
import os
import re
import shutil
from dataclasses import dataclass
from typing import Any, ClassVar

from pydantic import Field
from rich.console import Console
from rich.markup import escape

from deckhand import __version__
from deckhand.exceptions import ToolExecutionError, ToolValidationError
from deckhand.logging import get_logger
from deckhand.permissions import AgentPolicy, PermissionEvalResult
from deckhand.tools.registry import InvokeOutput, Tool, ToolContext

log = get_logger(__name__)

READONLY_OPS = ("get", "describe", "list", "ls", "search", "batch_get")
USER_AGENT_ENV_VAR = "AWS_EXECUTION_ENV"
USER_AGENT = f"Deckhand_Version/{__version__}"

_CAMEL_BOUNDARY_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")


def to_kebab_case(value: str) -> str:
    """Convert camelCase, PascalCase or snake_case keys into CLI flag names."""
    spaced = _CAMEL_BOUNDARY_RE.sub("-", value.strip())
    return re.sub(r"[_\s]+", "-", spaced).lower()


async def _run_aws(args: list[str], env: dict[str, str] | None = None) -> tuple[int, str, str]:
    process = await asyncio.create_subprocess_exec(
        "aws",
        *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=env,
    )
    try:
        stdout, stderr = await process.communicate()
    except asyncio.CancelledError:
        if process.returncode is None:
            process.kill()
            await process.wait()
        raise
    return (
        process.returncode if process.returncode is not None else -1,
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


@dataclass
class AwsContext:
    """Profile, region and account the AWS CLI would act on."""

    profile: str
    region: str
    account_id: str | None = None
    error: str | None = None

    @classmethod
    async def detect(cls, profile: str | None, region: str) -> AwsContext:
        context = cls(profile=profile or "default", region=region)
        if shutil.which("aws") is None:
            context.error = "AWS CLI is not available in PATH"
            return context
        args = ["sts", "get-caller-identity", "--query", "Account", "--output", "text"]
        if context.profile != "default":
            args.extend(["--profile", context.profile])
        try:
            code, stdout, stderr = await _run_aws(args)
        except OSError as e:
            context.error = f"Failed to run AWS CLI: {e}"
            return context
        if code != 0:
            if "Unable to locate credentials" in stderr:
                context.error = f"AWS credentials not found for profile '{context.profile}'."
            elif "could not be found" in stderr:
                context.error = f"AWS profile '{context.profile}' not found."
            else:
                context.error = stderr.strip() or f"AWS CLI exited with status {code}"
            log.warning("Failed to detect AWS account", profile=context.profile, error=context.error)
            return context
        context.account_id = stdout.strip() or None
        return context

    def format_for_display(self) -> str:
        lines = [f"AWS Profile: {self.profile}", f"AWS Region: {self.region}"]
        if self.account_id:
            lines.append(f"AWS Account ID: {self.account_id}")
        else:
            lines.append("AWS Account ID: Unable to determine (check AWS CLI configuration)")
        if self.error:
            lines.append(f"Warning: {self.error}")
        return "\n".join(lines)


class UseAws(Tool):
    """Run one AWS CLI operation."""

    name: ClassVar[str] = "use_aws"
    description: ClassVar[str] = (
        "Make an AWS CLI call with the specified service, operation and parameters. "
        "Parameter names are converted to --kebab-case flags."
    )

    service_name: str = Field(description="AWS service name, e.g. s3 or ec2")
    operation_name: str = Field(description="Operation in snake_case or kebab-case, e.g. list_buckets")
    parameters: dict[str, Any] | None = Field(default=None, description="Operation parameters")
    region: str = Field(description="AWS region")
    profile_name: str | None = Field(default=None, description="AWS profile to use")
    label: str | None = Field(default=None, description="Human readable label for the call")

    @property
    def is_read_only(self) -> bool:
        operation = self.operation_name.replace("-", "_")
        return any(operation.startswith(op) for op in READONLY_OPS)

    async def validate(self, ctx: ToolContext) -> None:
        if not self.service_name.strip():
            raise ToolValidationError(self.name, "service_name must not be empty")
        if not self.operation_name.strip():
            raise ToolValidationError(self.name, "operation_name must not be empty")
        if not self.region.strip():
            raise ToolValidationError(self.name, "region must not be empty")

    def requires_acceptance(self, policy: AgentPolicy, ctx: ToolContext | None = None) -> bool:
        return not self.is_read_only

    def eval_settings(self, settings: dict[str, Any]) -> PermissionEvalResult:
        if self.service_name in settings.get("denied_services", []):
            return PermissionEvalResult.DENY
        if self.service_name in settings.get("allowed_services", []):
            return PermissionEvalResult.ALLOW
        return PermissionEvalResult.ASK

    def queue_description(self, ctx: ToolContext, output: Console) -> None:
        output.print("Running aws cli command:\n")
        output.print(f"Service name: {escape(self.service_name)}")
        output.print(f"Operation name: {escape(self.operation_name)}")
        if self.parameters:
            output.print("Parameters: ")
            for key, value in self.parameters.items():
                if value == "":
                    output.print(f"- {escape(key)}")
                else:
                    output.print(f"- {escape(key)}: {escape(json.dumps(value, default=str))}")
        output.print(f"Profile name: {escape(self.profile_name or 'default')}")
        output.print(f"Region: {escape(self.region)}")
        if self.label:
            output.print(f"Label: {escape(self.label)}")

    def cli_parameters(self) -> list[tuple[str, str]]:
        params: list[tuple[str, str]] = []
        for key, value in (self.parameters or {}).items():
            if isinstance(value, str):
                cli_value = value
            elif isinstance(value, bool):
                cli_value = "true" if value else "false"
            elif isinstance(value, (int, float)):
                cli_value = str(value)
            else:
                cli_value = json.dumps(value)
            params.append((f"--{to_kebab_case(key)}", cli_value))
        return params

    def cli_args(self) -> list[str]:
        args = [self.service_name, to_kebab_case(self.operation_name)]
        for flag, value in self.cli_parameters():
            args.extend([flag, value])
        args.extend(["--region", self.region])
        if self.profile_name:
            args.extend(["--profile", self.profile_name])
        args.extend(["--output", "json"])
        return args

    async def invoke(self, ctx: ToolContext, output: Console) -> InvokeOutput:
        log.debug(
            "Invoking AWS tool",
            service=self.service_name,
            operation=self.operation_name,
            profile=self.profile_name,
            region=self.region,
        )
        if not self.is_read_only and ctx.config.chat.aws_actions_double_check:
            if not await self._double_check(ctx, output):
                output.print("Second confirmation denied. No AWS resources were modified.")
                raise ToolExecutionError(
                    self.name,
                    "Operation cancelled by user at AWS actions double-check confirmation",
                )
        return await self._execute(ctx)

    async def _double_check(self, ctx: ToolContext, output: Console) -> bool:
        """Show the AWS account about to be touched and ask again."""
        aws_context = await AwsContext.detect(self.profile_name, self.region)
        output.print("\n=== AWS Context Information ===")
        output.print(escape(aws_context.format_for_display()))
        output.print("================================\n")
        output.print("[yellow]ADDITIONAL SECURITY CHECK[/yellow]")
        output.print("Operation to be performed:")
        output.print(f"  Service: {escape(self.service_name)}")
        output.print(f"  Operation: {escape(self.operation_name)}")
        if self.label:
            output.print(f"  Label: {escape(self.label)}")

        if ctx.confirm is None or not ctx.interactive:
            log.warning("AWS double-check requested without an interactive input source")
            return False
        return await ctx.confirm("Do you want to proceed with this AWS operation? (y/N): ")

    async def _execute(self, ctx: ToolContext) -> InvokeOutput:
        env = os.environ.copy()
        env[USER_AGENT_ENV_VAR] = USER_AGENT
        try:
            code, stdout, stderr = await _run_aws(self.cli_args(), env=env)
        except OSError as e:
            raise ToolExecutionError(self.name, f"Failed to spawn AWS CLI command: {e}") from e

        limit = ctx.config.context.max_tool_response_size
        if len(stdout) > limit:
            stdout = stdout[:limit] + "... [truncated]"
        if len(stderr) > limit:
            stderr = stderr[:limit] + "... [truncated]"
        return InvokeOutput.from_json({"stdout": stdout, "stderr": stderr, "exit_status": code})
