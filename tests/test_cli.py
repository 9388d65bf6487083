import pytest
import yaml
from click.testing import CliRunner

from novel_engine.cli import cli
from novel_engine.providers.base import ProviderType
from novel_engine.providers.factory import ProviderFactory

from conftest import BLUEPRINT_DATA, FakeProvider

@pytest.fixture
def runner():
    return CliRunner()

@pytest.fixture
def sample_config(tmp_path):
    config_file = tmp_path / "config.yaml"
    config_file.write_text("""
generation:
  model_review: false
context:
  preset: default
log_level: WARNING
""")
    return config_file

@pytest.fixture
def fake_providers(monkeypatch):
    provider = FakeProvider()
    monkeypatch.setattr(
        ProviderFactory, "from_settings",
        classmethod(lambda cls, settings: cls({ProviderType.CLAUDE: provider})),
    )
    return provider

def test_cli_help(runner):
    result = runner.invoke(cli, ['--help'])
    assert result.exit_code == 0
    for command in ('generate', 'estimate', 'context', 'modes'):
        assert command in result.output

def test_modes_command(runner):
    result = runner.invoke(cli, ['modes'])
    assert result.exit_code == 0
    assert 'Generation modes' in result.output
    assert 'fast' in result.output

def test_estimate_command(runner, sample_config, blueprint_file):
    result = runner.invoke(cli, ['-c', str(sample_config), 'estimate', str(blueprint_file)])
    assert result.exit_code == 0
    assert 'Cost estimate: The Lantern Keeper' in result.output
    assert 'Total' in result.output

def test_context_command(runner, sample_config, blueprint_file):
    result = runner.invoke(cli, ['-c', str(sample_config), 'context', str(blueprint_file), '-n', '2'])
    assert result.exit_code == 0
    assert '=== SYSTEM PROMPT ===' in result.output
    assert 'Write Chapter 2 of "The Lantern Keeper".' in result.output

def test_context_unknown_chapter(runner, sample_config, blueprint_file):
    result = runner.invoke(cli, ['-c', str(sample_config), 'context', str(blueprint_file), '-n', '9'])
    assert result.exit_code != 0
    assert 'Chapter 9' in result.output

def test_invalid_blueprint(runner, sample_config, tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text(yaml.safe_dump({**BLUEPRINT_DATA, "title": ""}))
    result = runner.invoke(cli, ['-c', str(sample_config), 'estimate', str(path)])
    assert result.exit_code != 0
    assert 'Invalid blueprint' in result.output

def test_generate_command(runner, sample_config, blueprint_file, tmp_path, fake_providers):
    output_dir = tmp_path / "chapters"
    result = runner.invoke(cli, [
        '-c', str(sample_config), 'generate', str(blueprint_file), '-o', str(output_dir),
    ])
    assert result.exit_code == 0, result.output

    files = sorted(p.name for p in output_dir.glob("*.md"))
    assert files == ['chapter_01.md', 'chapter_02.md', 'chapter_03.md', 'chapter_04.md']
    first = (output_dir / 'chapter_01.md').read_text(encoding='utf-8')
    assert first.startswith('# Chapter 1: Night 1\n\n')
    assert 'Mara Quill climbed the spiral stairs' in first

def test_generate_range(runner, sample_config, blueprint_file, tmp_path, fake_providers):
    output_dir = tmp_path / "chapters"
    result = runner.invoke(cli, [
        '-c', str(sample_config), 'generate', str(blueprint_file), '-o', str(output_dir),
        '--start', '2', '--end', '2', '-m', 'fast',
    ])
    assert result.exit_code == 0, result.output
    assert [p.name for p in output_dir.glob("*.md")] == ['chapter_02.md']
    assert fake_providers.calls[0].model == 'claude-3-5-haiku-20241022'

def test_generate_dry_run(runner, sample_config, blueprint_file, tmp_path, fake_providers):
    output_dir = tmp_path / "chapters"
    result = runner.invoke(cli, [
        '-c', str(sample_config), 'generate', str(blueprint_file), '-o', str(output_dir), '--dry-run',
    ])
    assert result.exit_code == 0
    assert not output_dir.exists()
    assert fake_providers.calls == []

def test_generate_without_api_key(runner, sample_config, blueprint_file, tmp_path, monkeypatch):
    monkeypatch.setattr(
        ProviderFactory, "from_settings",
        classmethod(lambda cls, settings: cls({ProviderType.CLAUDE: FakeProvider(api_key="")})),
    )
    result = runner.invoke(cli, [
        '-c', str(sample_config), 'generate', str(blueprint_file), '-o', str(tmp_path / "out"),
    ])
    assert result.exit_code != 0
    assert 'not configured' in result.output
