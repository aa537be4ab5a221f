from __future__ import annotations

import json

import pytest
import typer
from typer.testing import CliRunner

from comfyflow import cli
from comfyflow.pipeline import RenderPipeline

runner = CliRunner()


@pytest.fixture
def wired(monkeypatch, server, clock):
    """Route every pipeline the CLI builds through the fake server."""

    def factory(cfg, profile, **kwargs):
        return RenderPipeline(cfg, profile, sleep=clock, transport=server.transport, **kwargs)

    monkeypatch.setattr(cli, "RenderPipeline", factory)
    monkeypatch.setenv("COMFY_API_URL", "http://comfy.test:8188")
    monkeypatch.delenv("COMFY_API_KEY", raising=False)
    return server


def test_parse_attachments(tmp_path):
    a = tmp_path / "a.png"
    b = tmp_path / "b.jpg"
    a.write_bytes(b"A")
    b.write_bytes(b"B")

    records = cli.parse_attachments([f"data={a}", f"1:data={b}"])

    assert len(records) == 2
    assert records[0].attachments["data"].mime_type == "image/png"
    assert records[1].attachments["data"].data == b"B"
    assert records[1].attachments["data"].file_name == "b.jpg"


def test_parse_attachments_rejects_missing_file(tmp_path):
    with pytest.raises(typer.BadParameter):
        cli.parse_attachments([f"data={tmp_path / 'nope.png'}"])


def test_image_command_writes_output(wired, tmp_path):
    workflow = tmp_path / "wf.json"
    workflow.write_text(json.dumps({"5": {"inputs": {"image": "x.png"}, "class_type": "LoadImage"}}))
    photo = tmp_path / "photo.png"
    photo.write_bytes(b"PNG")
    wired.history = [wired.complete("J1", {"9": {"images": [{"filename": "out.png", "type": "output"}]}})]
    wired.view_files = {"out.png": b"RESULT"}

    result = runner.invoke(
        cli.app,
        [
            "image",
            "--workflow",
            str(workflow),
            "--image-type",
            "binary",
            "--attach",
            f"data={photo}",
            "--out",
            str(tmp_path / "out"),
        ],
    )

    assert result.exit_code == 0, result.output
    assert (tmp_path / "out" / "out.png").read_bytes() == b"RESULT"


def test_command_reports_engine_errors(wired, tmp_path):
    workflow = tmp_path / "wf.json"
    workflow.write_text("{not json")

    result = runner.invoke(
        cli.app,
        ["image", "--workflow", str(workflow), "--image", "http://files.test/a.png", "--out", str(tmp_path)],
    )

    assert result.exit_code == 1
    assert "Invalid workflow JSON" in result.output
    assert wired.calls == []


def test_missing_server_url(monkeypatch, tmp_path):
    monkeypatch.delenv("COMFY_API_URL", raising=False)
    workflow = tmp_path / "wf.json"
    workflow.write_text("{}")

    result = runner.invoke(cli.app, ["audio", "--workflow", str(workflow), "--prompt", "rain"])

    assert result.exit_code != 0


def test_bad_timeout_env_is_a_usage_error(monkeypatch):
    monkeypatch.setenv("COMFY_API_URL", "http://comfy.test:8188")
    monkeypatch.setenv("COMFY_DOWNLOAD_TIMEOUT_S", "two minutes")

    result = runner.invoke(cli.app, ["check"])

    assert result.exit_code == 2
    assert not isinstance(result.exception, ValueError)


def test_dual_image_command_targets_given_nodes(wired, tmp_path):
    workflow = tmp_path / "wf.json"
    workflow.write_text(
        json.dumps(
            {
                "a": {"inputs": {"image": "x.png"}, "class_type": "LoadImage"},
                "b": {"inputs": {"image": "y.png"}, "class_type": "LoadImage"},
                "c": {"inputs": {"image": "z.png"}, "class_type": "LoadImage"},
            }
        )
    )
    wired.remote_files = {"http://files.test/1.png": b"ONE", "http://files.test/2.png": b"TWO"}
    wired.upload_names = ["one.png", "two.png"]
    wired.history = [wired.complete("J1", {"9": {"images": [{"filename": "mix.png", "type": "output"}]}})]
    wired.view_files = {"mix.png": b"MIX"}

    result = runner.invoke(
        cli.app,
        [
            "dual-image",
            "--workflow",
            str(workflow),
            "--first",
            "http://files.test/1.png",
            "--second",
            "http://files.test/2.png",
            "--first-node-id",
            "c",
            "--second-node-id",
            "b",
            "--out",
            str(tmp_path / "out"),
        ],
    )

    assert result.exit_code == 0, result.output
    submitted = wired.prompts[0]["prompt"]
    assert submitted["c"]["inputs"]["image"] == "one.png"
    assert submitted["b"]["inputs"]["image"] == "two.png"
    assert submitted["a"]["inputs"]["image"] == "x.png"


def test_dual_image_command_needs_both_node_ids(wired, tmp_path):
    workflow = tmp_path / "wf.json"
    workflow.write_text("{}")

    result = runner.invoke(
        cli.app,
        [
            "dual-image",
            "--workflow",
            str(workflow),
            "--first",
            "http://x/1.png",
            "--second",
            "http://x/2.png",
            "--first-node-id",
            "c",
        ],
    )

    assert result.exit_code == 2
    assert wired.calls == []
