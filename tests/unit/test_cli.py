import asyncio
import json

import httpx
import pytest
import yaml
from typer.testing import CliRunner

from zapflow.cli import app
from zapflow.config import EvolutionConfig
from zapflow.contracts import WorkflowSession
from zapflow.persistence import get_stores
from zapflow.providers import EvolutionProvider

runner = CliRunner()


@pytest.fixture(autouse=True)
def database(tmp_path, monkeypatch):
    for name in ("ZAPFLOW_CONFIG", "DATABASE_URL", "ZAPFLOW_PROVIDER", "ZAPFLOW_DEFAULT_WORKFLOW"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    url = f"sqlite://{tmp_path / 'cli.db'}"
    monkeypatch.setenv("ZAPFLOW_DATABASE_URL", url)
    return url


@pytest.fixture
def workflow_file(tmp_path, greeting_definition):
    path = tmp_path / "greeting.yaml"
    path.write_text(yaml.safe_dump(greeting_definition))
    return path


def _created_id(output: str) -> str:
    return output.split("Created workflow ", 1)[1].split(" ", 1)[0]


def test_import_list_show_delete(workflow_file):
    result = runner.invoke(app, ["workflow", "import", str(workflow_file)])
    assert result.exit_code == 0, result.stdout
    workflow_id = _created_id(result.stdout)

    result = runner.invoke(app, ["workflow", "list"])
    assert result.exit_code == 0
    assert workflow_id in result.stdout
    assert "Greeting" in result.stdout

    result = runner.invoke(app, ["workflow", "show", workflow_id])
    assert result.exit_code == 0
    assert "* m1 (message) -> i1" in result.stdout
    assert "- e1 (end)" in result.stdout

    result = runner.invoke(app, ["workflow", "delete", workflow_id])
    assert result.exit_code == 0

    result = runner.invoke(app, ["workflow", "show", workflow_id])
    assert result.exit_code == 1
    assert "Workflow not found" in result.stdout


def test_import_accepts_json(tmp_path, greeting_definition):
    path = tmp_path / "greeting.json"
    path.write_text(json.dumps(greeting_definition))
    result = runner.invoke(app, ["workflow", "import", str(path)])
    assert result.exit_code == 0, result.stdout


def test_validate_reports_issues(tmp_path, workflow_file, greeting_definition):
    result = runner.invoke(app, ["workflow", "validate", str(workflow_file)])
    assert result.exit_code == 0
    assert "is valid (3 nodes)" in result.stdout

    definition = greeting_definition
    definition["nodes"][0]["next"] = [{"id": "ghost"}]
    broken = tmp_path / "broken.yaml"
    broken.write_text(yaml.safe_dump(definition))
    result = runner.invoke(app, ["workflow", "validate", str(broken)])
    assert result.exit_code == 1
    assert "[dangling_edge]" in result.stdout


def test_validate_reports_malformed_file(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("name: x\nnodes: []\n")
    result = runner.invoke(app, ["workflow", "validate", str(path)])
    assert result.exit_code == 1
    assert "Malformed workflow definition" in result.stdout

    result = runner.invoke(app, ["workflow", "validate", str(tmp_path / "missing.yaml")])
    assert result.exit_code == 1


def test_template_command():
    result = runner.invoke(app, ["workflow", "template", "support", "--name", "Helpdesk"])
    assert result.exit_code == 0, result.stdout
    assert "(Helpdesk)" in result.stdout

    result = runner.invoke(app, ["workflow", "template", "unknown"])
    assert result.exit_code == 1
    assert "Unknown template" in result.stdout


def test_session_commands(database):
    _, sessions = get_stores(database)
    session = WorkflowSession(
        workflow_id="wf-1",
        contact_address="5511999990000",
        current_node_id="i1",
        variables={"name": "Ana"},
    )
    asyncio.run(sessions.create(session))

    result = runner.invoke(app, ["session", "list", "--active"])
    assert result.exit_code == 0
    assert session.session_id in result.stdout
    assert "ACTIVE" in result.stdout

    result = runner.invoke(app, ["session", "show", session.session_id])
    assert result.exit_code == 0
    assert "Contact: 5511999990000" in result.stdout
    assert "Current node: i1" in result.stdout

    result = runner.invoke(app, ["session", "abort", session.session_id])
    assert result.exit_code == 0
    assert "aborted" in result.stdout

    result = runner.invoke(app, ["session", "abort", session.session_id])
    assert result.exit_code == 0
    assert "already inactive" in result.stdout

    result = runner.invoke(app, ["session", "show", "missing"])
    assert result.exit_code == 1
    assert "Session not found" in result.stdout

    result = runner.invoke(app, ["session", "abort", "missing"])
    assert result.exit_code == 1


def test_session_resume_with_nothing_due():
    result = runner.invoke(app, ["session", "resume"])
    assert result.exit_code == 0
    assert "Resumed 0 session(s)" in result.stdout


def test_provider_status_inmemory():
    result = runner.invoke(app, ["provider", "status"])
    assert result.exit_code == 0
    assert "inmemory: open" in result.stdout


def test_simulate_runs_conversation(workflow_file):
    result = runner.invoke(app, ["simulate", str(workflow_file)], input="Ana\n")
    assert result.exit_code == 0, result.stdout
    assert "bot> Hi {{name}}" in result.stdout
    assert "bot> Name?" in result.stdout
    assert "bot> Bye Ana" in result.stdout
    assert "(conversation finished)" in result.stdout


def test_simulate_quit(workflow_file):
    result = runner.invoke(app, ["simulate", str(workflow_file)], input="/quit\n")
    assert result.exit_code == 0
    assert "Bye" not in result.stdout


def test_workflow_update_stores_new_version(tmp_path, workflow_file, greeting_definition, database):
    result = runner.invoke(app, ["workflow", "import", str(workflow_file)])
    workflow_id = _created_id(result.stdout)

    changed = dict(greeting_definition, name="Greeting v2")
    changed["nodes"] = [dict(n, next=[]) if n["id"] == "i1" else n for n in greeting_definition["nodes"]]
    path = tmp_path / "greeting-v2.yaml"
    path.write_text(yaml.safe_dump(changed))

    result = runner.invoke(app, ["workflow", "update", workflow_id, str(path)])
    assert result.exit_code == 0, result.stdout
    assert f"Updated workflow {workflow_id} to v2" in result.stdout

    result = runner.invoke(app, ["workflow", "show", workflow_id])
    assert "Greeting v2 (v2, private)" in result.stdout
    assert "- i1 (input)\n" in result.stdout

    workflows, _ = get_stores(database)
    assert asyncio.run(workflows.get(workflow_id, version=1)).name == "Greeting"


def test_workflow_update_rejects_missing_and_invalid(tmp_path, workflow_file, greeting_definition):
    result = runner.invoke(app, ["workflow", "update", "missing", str(workflow_file)])
    assert result.exit_code == 1
    assert "Workflow not found" in result.stdout

    workflow_id = _created_id(runner.invoke(app, ["workflow", "import", str(workflow_file)]).stdout)
    broken = dict(greeting_definition, startNodeId="nope")
    path = tmp_path / "broken.yaml"
    path.write_text(yaml.safe_dump(broken))

    result = runner.invoke(app, ["workflow", "update", workflow_id, str(path)])
    assert result.exit_code == 1
    assert "[missing_start_node]" in result.stdout


def test_provider_send_inmemory():
    result = runner.invoke(app, ["provider", "send", "5511999990000", "Your order has shipped"])
    assert result.exit_code == 0, result.stdout
    assert "Sent to 5511999990000 via inmemory" in result.stdout

    result = runner.invoke(
        app, ["provider", "send", "5511999990000", "Invoice", "--media-url", "https://x/inv.pdf"]
    )
    assert result.exit_code == 0, result.stdout


def test_provider_qr_and_create_instance_need_support():
    result = runner.invoke(app, ["provider", "qr"])
    assert result.exit_code == 1
    assert "inmemory does not expose a QR code" in result.stdout

    result = runner.invoke(app, ["provider", "create-instance"])
    assert result.exit_code == 1
    assert "inmemory does not support creating instances" in result.stdout


@pytest.fixture
def evolution(monkeypatch):
    """Route the CLI's provider to an Evolution adapter over a mock transport."""
    requests = []

    def handler(request):
        requests.append(request)
        if request.url.path == "/instance/create":
            return httpx.Response(201, json={"instance": {"instanceName": "sales"}})
        if request.url.path == "/message/sendText/sales":
            return httpx.Response(201, json={"key": {"id": "MSG1"}})
        return httpx.Response(200, json={"base64": "data:image/png;base64,QR", "code": "2@abc"})

    config = EvolutionConfig(instance_name="sales", api_key="key", api_url="http://evo")
    monkeypatch.setattr(
        "zapflow.cli.get_provider",
        lambda *args, **kwargs: EvolutionProvider(config, transport=httpx.MockTransport(handler)),
    )
    return requests


def test_provider_commands_over_evolution(evolution):
    result = runner.invoke(app, ["provider", "qr"])
    assert result.exit_code == 0, result.stdout
    assert "data:image/png;base64,QR" in result.stdout

    result = runner.invoke(app, ["provider", "create-instance"])
    assert result.exit_code == 0, result.stdout
    assert "Created instance sales" in result.stdout

    result = runner.invoke(app, ["provider", "send", "+55 11 99999-0000", "Hello"])
    assert result.exit_code == 0, result.stdout
    assert "via evolution" in result.stdout

    paths = [r.url.path for r in evolution]
    assert paths == ["/instance/connect/sales", "/instance/create", "/message/sendText/sales"]
    assert json.loads(evolution[2].content)["number"] == "5511999990000"
