from pathlib import Path
from unittest.mock import patch

import pytest

from tool_resolver import run
from tool_resolver.cache import CacheStore, ScriptCache
from tool_resolver.config import DEFAULT_SYNTH_MODEL, ResolverConfig
from tool_resolver.models import CacheEntry, ToolKind


@pytest.fixture
def env(tmp_path, monkeypatch):
    monkeypatch.setenv("TOOL_RESOLVER_CACHE_DIR", str(tmp_path / "scripts"))
    monkeypatch.setenv("TOOL_RESOLVER_MANIFEST_DIR", str(tmp_path / "plugins"))
    with patch("tool_resolver.config.load_dotenv"):
        yield tmp_path


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

def test_config_from_env_coerces_values(env, monkeypatch):
    monkeypatch.setenv("TOOL_RESOLVER_IDLE_HORIZON_DAYS", "7")
    monkeypatch.setenv("TOOL_RESOLVER_FAILURE_RING_SIZE", "5")
    monkeypatch.setenv("TOOL_RESOLVER_SYNTH_TIMEOUT", "45")

    config = ResolverConfig.from_env()

    assert config.cache_dir == Path(env / "scripts")
    assert config.idle_horizon_days == 7.0
    assert config.failure_ring_size == 5
    assert config.synthesis_timeout == 45.0
    assert config.synthesis_model == DEFAULT_SYNTH_MODEL
    assert config.tier_timeout(ToolKind.VISION_FALLBACK) == 60.0


def test_config_rejects_bad_values(env, monkeypatch):
    monkeypatch.setenv("TOOL_RESOLVER_FAILURE_RING_SIZE", "0")
    with pytest.raises(ValueError):
        ResolverConfig.from_env()


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def test_parse_params_decodes_json_values():
    assert run._parse_params(["title=Groceries", "count=3", "tags=[\"a\"]"]) == {
        "title": "Groceries",
        "count": 3,
        "tags": ["a"],
    }
    with pytest.raises(SystemExit):
        run._parse_params(["oops"])


def test_stats_and_cleanup_commands(env):
    cache = ScriptCache(CacheStore(env / "scripts"))
    cache.put(CacheEntry(
        signature="abc",
        action_name="create_note",
        platform="linux",
        language="shell",
        script_body="echo ok",
        success_count=1,
    ))

    with patch("tool_resolver.display.cache_stats") as cache_stats:
        assert run.main(["stats"]) == 0
    assert cache_stats.call_args.args[0]["total_scripts"] == 1

    with patch("tool_resolver.display.cleanup_done") as cleanup_done:
        assert run.main(["cleanup"]) == 0
    cleanup_done.assert_called_once_with([])


def test_catalog_command_lists_manifests(env):
    plugin = env / "plugins" / "notes"
    plugin.mkdir(parents=True)
    (plugin / "manifest.yml").write_text("name: create_note\nkind: cli\n", encoding="utf-8")

    with patch("tool_resolver.discovery.shutil.which", return_value=None), \
         patch("tool_resolver.display.catalog_table") as catalog_table:
        assert run.main(["catalog"]) == 0

    manifests = catalog_table.call_args.args[0]
    assert [(m.action_name, m.kind) for m in manifests] == [("create_note", ToolKind.CLI)]
