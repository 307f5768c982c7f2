import pytest

from tunnel_runner.services.tunnels.command_builder import (
    build_command,
    build_environment,
    build_remote_command,
    keep_alive_options,
    render_forward,
    render_jump_chain,
)
from tunnel_runner.services.tunnels.enums import ForwardDirection
from tunnel_runner.services.tunnels.exceptions import InvalidPlanError
from tunnel_runner.services.tunnels.schemas import (
    AuthMaterial,
    CommandPlan,
    ConnectionTarget,
    StagedCredentials,
)
from tunnel_runner.services.tunnels.spec_parser import (
    parse_forward,
    parse_jump_hosts,
    parse_local_forwards,
    parse_remote_forwards,
)


def make_plan(**kwargs):
    kwargs.setdefault("target", ConnectionTarget(host="internal.private", username="deploy"))
    return CommandPlan(**kwargs)


def flag_values(argv, flag):
    return [argv[i + 1] for i, arg in enumerate(argv[:-1]) if arg == flag]


def option_values(argv):
    return flag_values(argv, "-o")


@pytest.mark.parametrize("entry,direction", [
    ("8080:web:80", ForwardDirection.LOCAL),
    ("10.0.0.5:8080:web:80", ForwardDirection.LOCAL),
    ("0:localhost:3000", ForwardDirection.REMOTE),
    ("0.0.0.0:9000:db:5432", ForwardDirection.REMOTE),
    ("[::1]:8080:[fe80::1]:80", ForwardDirection.LOCAL),
])
def test_rendered_forward_reparses_to_same_spec(entry, direction):
    spec = parse_forward(entry, direction)
    assert parse_forward(render_forward(spec), direction) == spec


def test_local_forward_flag_binds_loopback():
    plan = make_plan(local_forwards=parse_local_forwards("8080:web:80"))
    argv = build_command(plan)
    assert flag_values(argv, "-L") == ["127.0.0.1:8080:web:80"]
    assert flag_values(argv, "-R") == []


def test_remote_dynamic_port_passed_through_literally():
    plan = make_plan(remote_forwards=parse_remote_forwards("0:localhost:3000"))
    argv = build_command(plan)
    assert flag_values(argv, "-R") == ["localhost:0:localhost:3000"]


def test_jump_chain_preserves_order():
    plan = make_plan(jump_chain=parse_jump_hosts("b1.example.com:22,b2.example.com:2222"))
    argv = build_command(plan)
    (chain,) = flag_values(argv, "-J")
    assert chain == "deploy@b1.example.com:22,deploy@b2.example.com:2222"
    assert chain.index("b1.example.com:22") < chain.index("b2.example.com:2222")
    assert "internal.private" in argv


def test_jump_chain_without_user():
    hops = parse_jump_hosts("ops@b1,[2001:db8::1]:2222")
    assert render_jump_chain(hops) == "ops@b1:22,[2001:db8::1]:2222"


@pytest.mark.parametrize("seconds", [1, 2, 3, 10, 59, 60, 61, 3600])
def test_keep_alive_interval_covers_duration(seconds):
    interval, count = keep_alive_options(seconds)
    assert 1 <= interval <= seconds
    assert interval * count >= seconds


def test_keep_alive_disabled():
    assert keep_alive_options(0)[0] == 0


def test_keep_alive_options_emitted():
    argv = build_command(make_plan(keep_alive=60))
    options = option_values(argv)
    assert "ServerAliveInterval=20" in options
    assert "ServerAliveCountMax=3" in options


def test_auth_flags_in_fixed_order():
    plan = make_plan(
        auth=AuthMaterial(private_key="KEY", private_key_path="/keys/id", known_hosts="HOSTS"),
    )
    credentials = StagedCredentials(
        directory="/tmp/x", private_key_file="/tmp/x/id_key", known_hosts_file="/tmp/x/known_hosts"
    )
    argv = build_command(plan, credentials)
    assert flag_values(argv, "-i") == ["/tmp/x/id_key", "/keys/id"]
    options = option_values(argv)
    assert "IdentitiesOnly=yes" in options
    assert "UserKnownHostsFile=/tmp/x/known_hosts" in options
    assert "StrictHostKeyChecking=yes" in options
    assert "BatchMode=yes" in options


def test_unknown_hosts_accepted_when_no_known_hosts():
    argv = build_command(make_plan())
    assert "StrictHostKeyChecking=accept-new" in option_values(argv)


def test_password_uses_sshpass_environment():
    plan = make_plan(auth=AuthMaterial(password="s3cret"))
    argv = build_command(plan)
    assert argv[:3] == ["sshpass", "-e", "ssh"]
    assert "s3cret" not in argv
    assert "BatchMode=yes" not in option_values(argv)
    assert "PreferredAuthentications=password" in option_values(argv)
    assert build_environment(plan) == {"SSHPASS": "s3cret"}


def test_no_environment_without_password():
    assert build_environment(make_plan()) == {}


def test_extra_flags_appended_last():
    plan = make_plan(extra_flags=("-o", "ServerAliveInterval=5", "-v"))
    argv = build_command(plan)
    assert argv[-3:] == ["-o", "ServerAliveInterval=5", "-v"]
    assert argv[-4] == "internal.private"


def test_target_port_and_user():
    plan = make_plan(target=ConnectionTarget(host="h", port=2022, username="me"))
    argv = build_command(plan)
    assert flag_values(argv, "-p") == ["2022"]
    assert flag_values(argv, "-l") == ["me"]


def test_control_master_when_control_path_staged():
    argv = build_command(make_plan(), StagedCredentials(control_path="/tmp/x/ctl"))
    assert "-M" in argv
    assert flag_values(argv, "-S") == ["/tmp/x/ctl"]


def test_custom_ssh_binary_is_split():
    argv = build_command(make_plan(), ssh_binary="/usr/bin/env ssh")
    assert argv[:2] == ["/usr/bin/env", "ssh"]


def test_empty_host_is_invalid():
    with pytest.raises(InvalidPlanError):
        build_command(make_plan(target=ConnectionTarget(host="")))


def test_negative_timeout_is_invalid():
    with pytest.raises(InvalidPlanError):
        build_command(make_plan(timeout=-1))


def test_build_is_deterministic():
    plan = make_plan(
        local_forwards=parse_local_forwards("8080:web:80,8081:api:81"),
        remote_forwards=parse_remote_forwards("0:localhost:3000"),
        jump_chain=parse_jump_hosts("b1,b2"),
    )
    assert build_command(plan) == build_command(plan)


def test_remote_command_goes_through_control_socket():
    credentials = StagedCredentials(control_path="/tmp/x/ctl")
    argv = build_remote_command(make_plan(), credentials, "uptime")
    assert flag_values(argv, "-S") == ["/tmp/x/ctl"]
    assert "-M" not in argv
    assert argv[-2:] == ["internal.private", "uptime"]


def test_remote_command_requires_control_socket():
    with pytest.raises(InvalidPlanError):
        build_remote_command(make_plan(), StagedCredentials(), "uptime")
