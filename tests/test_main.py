import json

from tunnel_runner import main as cli


def read_outputs(path):
    outputs = {}
    for line in path.read_text().splitlines():
        key, _, value = line.partition("=")
        outputs[key] = value
    return outputs


def test_dry_run_writes_command_output(tmp_path):
    output_file = tmp_path / "outputs"
    status = cli.main([
        "--host", "internal.private",
        "--username", "deploy",
        "--jump-hosts", "b1.example.com:22,b2.example.com:2222",
        "--local-forwards", "8080:web:80",
        "--dry-run",
        "--output-file", str(output_file),
    ])

    assert status == 0
    outputs = read_outputs(output_file)
    assert outputs["pid"] == ""
    assert "-J deploy@b1.example.com:22,deploy@b2.example.com:2222" in outputs["command"]
    assert "-L 127.0.0.1:8080:web:80" in outputs["command"]


def test_environment_inputs(tmp_path, monkeypatch):
    output_file = tmp_path / "outputs"
    monkeypatch.setenv("TUNNEL_HOST", "from-env")
    monkeypatch.setenv("TUNNEL_DRY_RUN", "true")
    monkeypatch.setenv("GITHUB_OUTPUT", str(output_file))

    assert cli.main([]) == 0
    assert read_outputs(output_file)["command"].split(" ")[-1] == "from-env"


def test_malformed_forward_exits_with_usage_error(tmp_path):
    status = cli.main(["--host", "h", "--local-forwards", "0:web:80", "--dry-run"])
    assert status == 2


def test_missing_host_exits_with_usage_error():
    assert cli.main(["--dry-run"]) == 2


def test_session_outputs(tmp_path, fake_ssh_binary):
    output_file = tmp_path / "outputs"
    status = cli.main([
        "--host", "remote",
        "--ssh-binary", fake_ssh_binary,
        "--remote-forwards", "0:localhost:3000",
        "--command", "true",
        "--output-file", str(output_file),
    ])

    assert status == 0
    outputs = read_outputs(output_file)
    assert outputs["pid"].isdigit()
    assert outputs["allocated-host"] == "remote"
    assert outputs["allocated-port"] == "51234"


def test_failing_command_exit_status(tmp_path, fake_ssh_binary):
    output_file = tmp_path / "outputs"
    status = cli.main([
        "--host", "remote",
        "--ssh-binary", fake_ssh_binary,
        "--command", "exit 1",
        "--post-command", "true",
        "--output-file", str(output_file),
    ])

    assert status == 1
    assert read_outputs(output_file)["pid"].isdigit()


def test_invalid_environment_value_exits_with_usage_error(monkeypatch):
    monkeypatch.setenv("TUNNEL_PORT", "abc")
    assert cli.main(["--host", "h", "--dry-run"]) == 2


def test_allocation_pattern_without_port_exits_with_usage_error(monkeypatch):
    monkeypatch.setenv("TUNNEL_ALLOCATION_PATTERNS", json.dumps([r"Allocated port (\d+)"]))
    assert cli.main(["--host", "h", "--dry-run"]) == 2
