"""Test the command-line recipe runner."""

import json

from conftest import StubAdaptor
from storylab import cli

RECIPE = {
    "id": "cli",
    "name": "CLI",
    "nodes": [{
        "id": "a",
        "name": "A",
        "type": "text_generation",
        "outputKey": "greeting",
        "inputMapping": {"name": "external_input.name"},
        "aiModel": {"provider": "stub", "modelName": "stub-text"},
        "prompt": "Hello {{name}}",
    }],
}


def write(path, data):
    path.write_text(json.dumps(data))
    return str(path)


def test_run_recipe_file(tmp_path, services, monkeypatch, capsys):
    monkeypatch.setattr(cli.Services, "create", lambda **kwargs: services)
    code = cli.main([
        "run",
        write(tmp_path / "recipe.json", RECIPE),
        "--input",
        write(tmp_path / "input.json", {"name": "Ann"}),
        "--outputs",
    ])
    assert code == 0
    assert "echo: Hello Ann" in capsys.readouterr().out


def test_failed_run_exits_1(tmp_path, services, monkeypatch):
    StubAdaptor.text_responses = [RuntimeError("down")]
    monkeypatch.setattr(cli.Services, "create", lambda **kwargs: services)
    assert cli.main(["run", write(tmp_path / "recipe.json", RECIPE)]) == 1


def test_invalid_recipe_exits_2(tmp_path):
    assert cli.main(["run", write(tmp_path / "recipe.json", {**RECIPE, "nodes": []})]) == 2


def test_missing_file_exits_2(tmp_path):
    assert cli.main(["run", str(tmp_path / "missing.json")]) == 2
