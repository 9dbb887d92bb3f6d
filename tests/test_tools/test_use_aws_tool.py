import io
from pathlib import Path

import pytest
from rich.console import Console

import deckhand.tools.use_aws as use_aws_module
from deckhand.config import Config
from deckhand.exceptions import ToolExecutionError, ToolValidationError
from deckhand.tools import ToolContext, UseAws
from deckhand.tools.use_aws import to_kebab_case


def quiet() -> Console:
    return Console(file=io.StringIO())


def test_kebab_case_conversion():
    assert to_kebab_case("BucketName") == "bucket-name"
    assert to_kebab_case("maxItems") == "max-items"
    assert to_kebab_case("list_buckets") == "list-buckets"
    assert to_kebab_case("DBInstanceIdentifier") == "db-instance-identifier"


def test_cli_args_include_parameters_region_and_profile():
    tool = UseAws(
        service_name="s3api",
        operation_name="list_objects_v2",
        parameters={"Bucket": "logs", "MaxKeys": 10, "FetchOwner": True, "Filter": {"a": 1}},
        region="eu-west-1",
        profile_name="dev",
    )

    assert tool.cli_args() == [
        "s3api",
        "list-objects-v2",
        "--bucket",
        "logs",
        "--max-keys",
        "10",
        "--fetch-owner",
        "true",
        "--filter",
        '{"a": 1}',
        "--region",
        "eu-west-1",
        "--profile",
        "dev",
        "--output",
        "json",
    ]


def test_read_only_operations():
    def aws(operation):
        return UseAws(service_name="ec2", operation_name=operation, region="us-east-1")

    assert aws("describe_instances").is_read_only
    assert aws("list-buckets").is_read_only
    assert not aws("terminate_instances").is_read_only


@pytest.mark.asyncio
async def test_validate_rejects_blank_fields(tmp_path: Path):
    tool = UseAws(service_name="s3", operation_name=" ", region="us-east-1")
    with pytest.raises(ToolValidationError):
        await tool.validate(ToolContext(cwd=tmp_path, config=Config()))


@pytest.mark.asyncio
async def test_invoke_returns_cli_output(monkeypatch, tmp_path: Path):
    calls = []

    async def fake_run_aws(args, env=None):
        calls.append((args, env))
        return 0, '{"Buckets": []}', ""

    monkeypatch.setattr(use_aws_module, "_run_aws", fake_run_aws)
    tool = UseAws(service_name="s3api", operation_name="list_buckets", region="us-east-1")

    output = await tool.invoke(ToolContext(cwd=tmp_path, config=Config()), quiet())

    assert output.data == {"stdout": '{"Buckets": []}', "stderr": "", "exit_status": 0}
    args, env = calls[0]
    assert args[:2] == ["s3api", "list-buckets"]
    assert env[use_aws_module.USER_AGENT_ENV_VAR] == use_aws_module.USER_AGENT


@pytest.mark.asyncio
async def test_double_check_declined_stops_mutation(monkeypatch, tmp_path: Path):
    async def fake_run_aws(args, env=None):
        if args[:2] == ["sts", "get-caller-identity"]:
            return 0, "123456789012\n", ""
        raise AssertionError("mutating call must not run")

    async def decline(question):
        return False

    monkeypatch.setattr(use_aws_module, "_run_aws", fake_run_aws)
    monkeypatch.setattr(use_aws_module.shutil, "which", lambda name: "/usr/bin/aws")
    config = Config()
    config.chat.aws_actions_double_check = True
    ctx = ToolContext(cwd=tmp_path, config=config, confirm=decline)
    console = quiet()

    with pytest.raises(ToolExecutionError, match="double-check"):
        await UseAws(service_name="ec2", operation_name="terminate_instances", region="us-east-1").invoke(
            ctx, console
        )

    text = console.file.getvalue()
    assert "AWS Account ID: 123456789012" in text
    assert "No AWS resources were modified." in text


@pytest.mark.asyncio
async def test_double_check_skipped_for_read_only_operations(monkeypatch, tmp_path: Path):
    async def fake_run_aws(args, env=None):
        return 0, "[]", ""

    async def must_not_ask(question):
        raise AssertionError("read-only calls need no confirmation")

    monkeypatch.setattr(use_aws_module, "_run_aws", fake_run_aws)
    config = Config()
    config.chat.aws_actions_double_check = True
    ctx = ToolContext(cwd=tmp_path, config=config, confirm=must_not_ask)

    output = await UseAws(service_name="ec2", operation_name="describe_vpcs", region="us-east-1").invoke(
        ctx, quiet()
    )

    assert output.data["stdout"] == "[]"
