# run.py
# Entry point. Config and wiring only. No logic lives here.
#
#   tool-resolver resolve create_note -p title=Groceries -p body="milk, eggs"
#   tool-resolver catalog
#   tool-resolver stats
#   tool-resolver cleanup --watch

import argparse
import asyncio
import json
import sys
from datetime import timedelta

import httpx

from tool_resolver import display
from tool_resolver.cache import CacheStore, ScriptCache
from tool_resolver.catalog import ToolCatalog
from tool_resolver.config import ResolverConfig
from tool_resolver.discovery import (
    ManifestDirectoryDiscoverer,
    PathToolDiscoverer,
    ScriptDictionaryDiscoverer,
    ShortcutsDiscoverer,
    discover_all,
)
from tool_resolver.engine import build_engine
from tool_resolver.models import ActionRequest, PlatformContext
from tool_resolver.signature import normalize_platform

# Command-line tools offered when present on PATH.
PATH_TOOLS = {
    "open_url": ["xdg-open", "{url}"],
    "open_app": ["open", "-a", "{app}"],
    "notify": ["notify-send", "{title}", "{message}"],
    "say": ["say", "{text}"],
}


def _discoverers(config: ResolverConfig) -> list:
    return [
        ManifestDirectoryDiscoverer(config.manifest_dir),
        ScriptDictionaryDiscoverer(),
        ShortcutsDiscoverer(),
        PathToolDiscoverer(PATH_TOOLS),
    ]


def _open_cache(config: ResolverConfig, catalog: ToolCatalog | None = None) -> ScriptCache:
    return ScriptCache(
        CacheStore(config.cache_dir),
        catalog=catalog,
        idle_horizon=timedelta(days=config.idle_horizon_days),
    )


def _parse_params(pairs: list[str]) -> dict:
    params: dict = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep:
            raise SystemExit(f"Parameter {pair!r} must look like key=value")
        try:
            params[key] = json.loads(value)
        except json.JSONDecodeError:
            params[key] = value
    return params


async def _resolve(args: argparse.Namespace, config: ResolverConfig) -> int:
    platform = normalize_platform(args.platform)
    request = ActionRequest(
        action_name=args.action,
        parameters=_parse_params(args.param),
        context=PlatformContext(platform=platform, front_app=args.front_app),
    )
    display.request_received(request)

    async with httpx.AsyncClient(timeout=10) as client:
        engine = build_engine(
            config,
            platform=platform,
            discoverers=_discoverers(config),
            http_client=client,
        )
        result = await engine.resolve(request)
    display.attempts_table(result)
    display.resolution_result(result)
    return 0 if result.success else 1


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="tool-resolver")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    resolve = sub.add_parser("resolve", help="Resolve and execute one action.")
    resolve.add_argument("action")
    resolve.add_argument("-p", "--param", action="append", default=[], metavar="KEY=VALUE")
    resolve.add_argument("--platform", default=sys.platform)
    resolve.add_argument("--front-app", default=None)

    sub.add_parser("catalog", help="List discovered and promoted tools.")
    sub.add_parser("stats", help="Show script cache statistics.")
    cleanup = sub.add_parser("cleanup", help="Evict idle cached scripts.")
    cleanup.add_argument(
        "--watch",
        action="store_true",
        help="Keep sweeping every TOOL_RESOLVER_CLEANUP_INTERVAL seconds.",
    )

    args = parser.parse_args(argv)
    display.configure_logging(args.verbose)
    config = ResolverConfig.from_env()

    if args.command == "resolve":
        return asyncio.run(_resolve(args, config))

    if args.command == "catalog":
        catalog = ToolCatalog(discover_all(_discoverers(config)))
        _open_cache(config, catalog).promote_all()
        manifests = [m for name in catalog.action_names() for m in catalog.lookup(name)]
        display.catalog_table(manifests)
        return 0

    cache = _open_cache(config)
    if args.command == "stats":
        display.cache_stats(cache.stats())
        return 0

    display.cleanup_done(cache.cleanup())
    if args.watch:
        display.cleanup_watching(config.cleanup_interval)
        try:
            asyncio.run(cache.run_periodic_cleanup(config.cleanup_interval))
        except KeyboardInterrupt:
            pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
