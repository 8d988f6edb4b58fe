import json

import pytest

from triage_bot.errors import ConfigurationError
from triage_bot.tools.servers import LocalServer, RemoteServer, load_mcp_config, parse_mcp_config


def test_parse_mcp_config_reads_both_sections():
    servers = parse_mcp_config(
        {
            "servers": {
                "jira": {"url": "https://mcp.example.com/jira", "headers": [["Authorization", "Bearer x"]]},
                "dupe": {"command": "old"},
            },
            "mcpServers": {
                "repo": {"command": "uvx", "args": ["repo-mcp", "--root", "."], "env": {"TOKEN": "t"}},
                "dupe": {"command": "new"},
            },
        }
    )
    by_name = {server.name: server for server in servers}
    assert isinstance(by_name["jira"], RemoteServer)
    assert by_name["jira"].headers == {"Authorization": "Bearer x"}
    assert isinstance(by_name["repo"], LocalServer)
    assert by_name["repo"].args == ("repo-mcp", "--root", ".")
    assert by_name["repo"].env == {"TOKEN": "t"}
    assert by_name["dupe"].command == "new"


@pytest.mark.parametrize(
    "entry",
    [
        {"url": "ftp://nope"},
        {"args": ["x"]},
        {"command": "x", "args": "not-a-list"},
        {"command": "x", "env": ["bad-pair"]},
    ],
)
def test_parse_mcp_config_rejects_bad_entries(entry):
    with pytest.raises(ConfigurationError):
        parse_mcp_config({"servers": {"broken": entry}})


def test_load_mcp_config_missing_file_means_no_servers(tmp_path):
    assert load_mcp_config(tmp_path / "absent.json") == []

    path = tmp_path / "mcp.json"
    path.write_text(json.dumps({"servers": {"local": {"command": "echo"}}}), encoding="utf-8")
    assert [server.name for server in load_mcp_config(path)] == ["local"]

    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_mcp_config(path)
