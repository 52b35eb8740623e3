import subprocess
from unittest import mock

import pytest

from nft_client import NftClient, NftCommandError


def _completed(stdout=""):
    return subprocess.CompletedProcess(args=[], returncode=0, stdout=stdout, stderr="")


def _failed(stderr):
    return subprocess.CalledProcessError(1, ["nft"], output="", stderr=stderr)


@pytest.fixture
def run():
    with mock.patch("nft_client.subprocess.run", return_value=_completed()) as patched:
        yield patched


def _argv(run_mock):
    return run_mock.call_args[0][0]


def test_create_set_command(run):
    NftClient("blacklist").create_set("blacklist_v4", "ipv4_addr")
    assert _argv(run) == [
        "nft", "add", "set", "inet", "blacklist", "blacklist_v4",
        "{ type ipv4_addr; flags interval; auto-merge; }",
    ]
    assert run.call_args[1]["check"] is True
    assert run.call_args[1]["capture_output"] is True


def test_create_chain_command(run):
    NftClient("blacklist").create_chain("input", "input", -1)
    assert _argv(run)[-1] == "{ type filter hook input priority -1; policy accept; }"


def test_add_elements_joins_batch(run):
    NftClient("blacklist").add_elements("blacklist_v6", ["2001:db8::/32", "::1"])
    assert _argv(run)[-2:] == ["blacklist_v6", "{ 2001:db8::/32, ::1 }"]


def test_add_rule_splits_expression(run):
    NftClient("blacklist").add_rule("output", "ip daddr @blacklist_v4 drop")
    assert _argv(run) == [
        "nft", "add", "rule", "inet", "blacklist", "output",
        "ip", "daddr", "@blacklist_v4", "drop",
    ]


def test_sudo_prefix(run):
    NftClient("blacklist", use_sudo=True).flush_set("blacklist_v4")
    assert _argv(run)[:2] == ["sudo", "nft"]


def test_list_chain_returns_stdout(run):
    run.return_value = _completed("table inet blacklist {\n}\n")
    assert NftClient("blacklist").list_chain("input").startswith("table inet blacklist")


def test_failure_raises_with_stderr(run):
    run.side_effect = _failed("Error: No such file or directory")
    with pytest.raises(NftCommandError) as excinfo:
        NftClient("blacklist").flush_set("blacklist_v4")
    assert excinfo.value.stderr == "Error: No such file or directory"
    assert "flush" in excinfo.value.command


def test_create_tolerates_existing_objects(run):
    run.side_effect = _failed("Error: Could not process rule: File exists")
    NftClient("blacklist").create_set("blacklist_v4", "ipv4_addr")


def test_timeout_is_command_error(run):
    run.side_effect = subprocess.TimeoutExpired(["nft"], 30)
    with pytest.raises(NftCommandError, match="timed out"):
        NftClient("blacklist").delete_table()


def test_missing_binary_is_command_error(run):
    run.side_effect = FileNotFoundError("nft")
    with pytest.raises(NftCommandError):
        NftClient("blacklist").create_table()


def test_table_exists(run):
    client = NftClient("blacklist")
    assert client.table_exists() is True
    run.side_effect = _failed("Error: No such file or directory")
    assert client.table_exists() is False


def test_dry_run_skips_mutations(run):
    client = NftClient("blacklist", dry_run=True)
    client.create_table()
    client.add_elements("blacklist_v4", ["203.0.113.5"])
    client.delete_table()
    run.assert_not_called()


def test_dry_run_list_chain_tolerates_missing_chain(run):
    run.side_effect = _failed("Error: No such file or directory")
    assert NftClient("blacklist", dry_run=True).list_chain("input") == ""


@pytest.mark.parametrize("failure", [
    _failed("Error: Operation not permitted"),
    subprocess.TimeoutExpired(["nft"], 30),
    FileNotFoundError(2, "No such file or directory", "nft"),
])
def test_table_exists_raises_unless_table_is_missing(run, failure):
    run.side_effect = failure
    with pytest.raises(NftCommandError):
        NftClient("blacklist").table_exists()
