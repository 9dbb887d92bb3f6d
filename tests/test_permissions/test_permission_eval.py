import pytest

from deckhand.config import Config
from deckhand.exceptions import ConfigurationError
from deckhand.permissions import AgentPolicy, Agents, PermissionEvalResult, evaluate_permission
from deckhand.tools import ExecuteBash, FsRead, FsWrite, ToolContext, UseAws


def make_agents(allowed=(), denied=(), settings=None, trust_all_tools=False):
    policy = AgentPolicy(
        name="default",
        allowed_tools=set(allowed),
        denied_tools=set(denied),
        tools_settings=settings or {},
    )
    return Agents({"default": policy}, trust_all_tools=trust_all_tools)


def test_read_only_tool_is_allowed_without_policy():
    tool = FsRead(path="README.md")
    assert evaluate_permission(tool, make_agents()) is PermissionEvalResult.ALLOW


def test_writing_tool_asks_without_policy():
    tool = FsWrite(command="create", path="a.txt", file_text="x")
    assert evaluate_permission(tool, make_agents()) is PermissionEvalResult.ASK


def test_deny_set_wins_over_trust_all():
    tool = FsRead(path="README.md")
    agents = make_agents(allowed={"fs_read"}, denied={"fs_read"}, trust_all_tools=True)
    assert evaluate_permission(tool, agents) is PermissionEvalResult.DENY


def test_deny_patterns_use_globs():
    tool = FsWrite(command="create", path="a.txt", file_text="x")
    assert evaluate_permission(tool, make_agents(denied={"fs_*"})) is PermissionEvalResult.DENY


def test_trust_all_allows_risky_tools():
    tool = ExecuteBash(command="rm -rf build")
    assert evaluate_permission(tool, make_agents(trust_all_tools=True)) is PermissionEvalResult.ALLOW


def test_allow_listed_tool_without_settings_is_allowed():
    tool = ExecuteBash(command="make test")
    assert evaluate_permission(tool, make_agents(allowed={"execute_bash"})) is PermissionEvalResult.ALLOW


def test_settings_narrow_allow_listed_tool():
    settings = {"fs_write": {"allowed_paths": ["docs/**"]}}
    agents = make_agents(allowed={"fs_write"}, settings=settings)

    inside = FsWrite(command="create", path="docs/guide.md", file_text="x")
    outside = FsWrite(command="create", path="src/main.py", file_text="x")

    assert evaluate_permission(inside, agents) is PermissionEvalResult.ALLOW
    assert evaluate_permission(outside, agents) is PermissionEvalResult.ASK


def test_settings_deny_is_final():
    settings = {"fs_read": {"denied_paths": ["/etc/*"]}}
    agents = make_agents(allowed={"fs_read"}, settings=settings, trust_all_tools=True)
    assert evaluate_permission(FsRead(path="/etc/shadow"), agents) is PermissionEvalResult.DENY


def test_settings_without_allow_listing_fall_back_to_risk():
    settings = {"fs_write": {"allowed_paths": ["docs/**"]}, "fs_read": {"denied_paths": ["/etc/*"]}}
    agents = make_agents(settings=settings)

    inside = FsWrite(command="create", path="docs/guide.md", file_text="x")
    assert evaluate_permission(inside, agents) is PermissionEvalResult.ASK
    assert evaluate_permission(FsRead(path="/etc/shadow"), agents) is PermissionEvalResult.ALLOW


def test_bash_command_settings():
    settings = {"execute_bash": {"allowed_commands": ["git status", "npm *"], "denied_commands": ["rm *"]}}
    agents = make_agents(allowed={"execute_bash"}, settings=settings)

    assert evaluate_permission(ExecuteBash(command="git status"), agents) is PermissionEvalResult.ALLOW
    assert evaluate_permission(ExecuteBash(command="npm run build"), agents) is PermissionEvalResult.ALLOW
    assert evaluate_permission(ExecuteBash(command="rm -rf /"), agents) is PermissionEvalResult.DENY
    assert evaluate_permission(ExecuteBash(command="git push"), agents) is PermissionEvalResult.ASK


def test_readonly_bash_commands_are_allowed():
    agents = make_agents()
    assert evaluate_permission(ExecuteBash(command="ls -la | grep py"), agents) is PermissionEvalResult.ALLOW
    assert evaluate_permission(ExecuteBash(command="ls > out.txt"), agents) is PermissionEvalResult.ASK


def test_readonly_bash_commands_come_from_context_config(tmp_path):
    config = Config()
    config.tools.readonly_commands = ["git"]
    ctx = ToolContext(cwd=tmp_path, config=config)
    agents = make_agents()

    assert evaluate_permission(ExecuteBash(command="git status"), agents, ctx) is PermissionEvalResult.ALLOW
    assert evaluate_permission(ExecuteBash(command="ls -la"), agents, ctx) is PermissionEvalResult.ASK


def aws(service, operation):
    return UseAws(service_name=service, operation_name=operation, region="us-east-1")


def test_aws_service_settings():
    settings = {"use_aws": {"allowed_services": ["s3"], "denied_services": ["iam"]}}
    agents = make_agents(allowed={"use_aws"}, settings=settings)

    assert evaluate_permission(aws("s3", "delete_bucket"), agents) is PermissionEvalResult.ALLOW
    assert evaluate_permission(aws("iam", "list_users"), agents) is PermissionEvalResult.DENY
    assert evaluate_permission(aws("ec2", "describe_instances"), agents) is PermissionEvalResult.ASK


def test_aws_read_only_operations_without_policy():
    agents = make_agents()

    assert evaluate_permission(aws("ec2", "describe_instances"), agents) is PermissionEvalResult.ALLOW
    assert evaluate_permission(aws("ec2", "terminate_instances"), agents) is PermissionEvalResult.ASK


def test_trust_and_reset_tools():
    agents = make_agents(allowed={"fs_read"})
    agents.trust_tools(["FS_WRITE"])
    agents.trust_all()

    assert agents.get_active().is_allowed("fs_write")

    agents.reset_tools()

    assert agents.trust_all_tools is False
    assert not agents.get_active().is_allowed("fs_write")
    assert agents.get_active().is_allowed("fs_read")


def test_untrust_turns_off_trust_all():
    agents = make_agents(allowed={"fs_write"}, trust_all_tools=True)
    agents.untrust_tools(["fs_write"])

    assert agents.trust_all_tools is False
    assert not agents.get_active().is_allowed("fs_write")


def test_unknown_active_agent_is_a_configuration_error():
    with pytest.raises(ConfigurationError):
        Agents({}, active="ghost")
