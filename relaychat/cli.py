#!/usr/bin/env python3
"""
relaychat CLI — talk to hosted models from the terminal.

Every command has a short name and standard aliases:

    COMMAND         ALIASES         WHAT IT DOES
    -------         -------         ----------------------------------
    chat            talk            Interactive chat (Ctrl-C stops a reply)
    models          catalog         List models with category and tiers
    setup           configure       Save API key / model to config.yaml
    relay           serve, proxy    Run the cross-origin relay
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path

from relaychat import __version__
from relaychat.config import (
    DEFAULT_BASE_URL,
    Config,
    YamlConfigStore,
    get_settings,
    load_settings,
    mask_key,
    setup_logging,
)

logger = logging.getLogger(__name__)

CHAT_HELP = """
  /new            start a new conversation
  /list           list conversations
  /switch N       make conversation N active
  /delete N       delete conversation N
  /clear          delete every conversation
  /export FILE    dump conversations to JSON
  /quit           leave
"""


# ---------------------------------------------------------------------------
# chat
# ---------------------------------------------------------------------------

async def _run_turn(orchestrator, text: str):
    """Submit one message; SIGINT cancels the reply instead of killing us."""
    loop = asyncio.get_running_loop()
    handler_installed = False
    try:
        loop.add_signal_handler(signal.SIGINT, orchestrator.cancel)
        handler_installed = True
    except (NotImplementedError, RuntimeError):
        pass  # Windows: Ctrl-C falls through as KeyboardInterrupt

    try:
        return await orchestrator.submit(text)
    finally:
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)


def _print_turn_end(turn):
    from relaychat.orchestrator import Phase

    if turn.phase is Phase.FAILED:
        print(f"\n  \033[91m{turn.error.user_message}\033[0m")
    elif turn.phase is Phase.CANCELLED:
        print("\n  [reply stopped]")
    else:
        print()


def _pick(store, arg: str):
    try:
        return store.conversations[int(arg) - 1]
    except (ValueError, IndexError):
        print(f"  No conversation {arg!r}. Try /list.")
        return None


def _handle_command(orchestrator, line: str) -> bool:
    """Run a slash command. Returns False when the REPL should exit."""
    store = orchestrator.store
    cmd, _, arg = line.partition(" ")
    arg = arg.strip()

    if cmd in ("/quit", "/exit", "/q"):
        return False
    if cmd == "/new":
        orchestrator.new_chat()
        print("  New conversation.")
    elif cmd == "/list":
        if not len(store):
            print("  No conversations yet.")
        for i, conv in enumerate(store.conversations, 1):
            marker = "*" if conv.id == store.active_id else " "
            print(f"  {marker}{i:>3}  {conv.preview}  ({len(conv.messages)} msgs)")
    elif cmd == "/switch":
        conv = _pick(store, arg)
        if conv:
            orchestrator.select(conv.id)
            for msg in conv.messages:
                print(f"  {msg.role.value}> {msg.content}")
    elif cmd == "/delete":
        conv = _pick(store, arg)
        if conv:
            orchestrator.delete(conv.id)
            print(f"  Deleted: {conv.preview}")
    elif cmd == "/clear":
        orchestrator.clear_history()
        print("  History cleared.")
    elif cmd == "/export":
        path = arg or "conversations_export.json"
        with open(path, "w") as f:
            json.dump(store.export(), f, indent=2, ensure_ascii=False)
        print(f"  Exported {len(store)} conversations to {path}")
    else:
        print(CHAT_HELP)
    return True


def cmd_chat(args):
    """Interactive chat, or a single question when one is given."""
    from relaychat.catalog import ModelCatalog
    from relaychat.errors import SubmissionRejected
    from relaychat.orchestrator import ChatOrchestrator
    from relaychat.store import ConversationStore

    config_store = YamlConfigStore(args.config)
    config = config_store.load()
    if config is None or not config.is_valid:
        print("  ✗  No usable config. Run 'relaychat setup --api-key ... --model ...' first.")
        sys.exit(1)

    catalog = None
    if not config.max_tokens:
        ttl = get_settings().get("catalog", {}).get("ttl_seconds", 6 * 60 * 60)
        catalog = ModelCatalog(config.base_url, ttl_seconds=ttl)
        try:
            asyncio.run(catalog.refresh())
        except Exception as e:
            logger.warning("Model catalog unavailable, using default max_tokens: %s", e)

    store = ConversationStore()

    def _echo(event):
        if event.kind == "append":
            print(event.fragment, end="", flush=True)

    store.add_listener(_echo)
    orchestrator = ChatOrchestrator(store=store, config_store=config_store, catalog=catalog)

    def _ask(text: str):
        print("  ◀ ", end="", flush=True)
        try:
            turn = asyncio.run(_run_turn(orchestrator, text))
        except SubmissionRejected as e:
            print(f"\n  ✗  {e}")
            return
        except KeyboardInterrupt:
            orchestrator.reset()
            print("\n  [reply stopped]")
            return
        _print_turn_end(turn)

    if args.prompt:
        _ask(" ".join(args.prompt))
        return

    print(f"  relaychat {__version__} · model: {config.model}")
    print("  Type /help for commands, /quit to leave.\n")
    while True:
        try:
            line = input("  ▶ ").strip()
        except (EOFError, KeyboardInterrupt):
            print()
            break
        if not line:
            continue
        if line.startswith("/"):
            if not _handle_command(orchestrator, line):
                break
            continue
        _ask(line)


# ---------------------------------------------------------------------------
# models
# ---------------------------------------------------------------------------

def cmd_models(args):
    """List catalog entries, optionally filtered by substring."""
    from relaychat.catalog import ModelCatalog

    config = YamlConfigStore(args.config).load()
    base_url = args.base_url or (config.base_url if config else DEFAULT_BASE_URL)
    catalog = ModelCatalog(base_url)

    try:
        models = asyncio.run(catalog.models())
    except Exception as e:
        print(f"  ✗  Cannot fetch models from {base_url}: {e}")
        sys.exit(1)

    needle = (args.filter or "").lower()
    if needle:
        models = [m for m in models if needle in m.id.lower() or needle in m.name.lower()]
    if args.category:
        models = [m for m in models if m.category.lower() == args.category.lower()]

    print(f"  {'Model':<48} {'Category':<12} {'Price':>6} {'Ctx':>4} {'Max tok':>8}")
    print("  " + "─" * 82)
    for m in sorted(models, key=lambda m: m.id):
        name = m.id[:46] + ".." if len(m.id) > 48 else m.id
        print(f"  {name:<48} {m.category:<12} {m.pricing_tier:>6} {m.context_tier:>4} {m.smart_max_tokens:>8,}")
    print(f"\n  {len(models)} models")


# ---------------------------------------------------------------------------
# setup
# ---------------------------------------------------------------------------

def cmd_setup(args):
    """Merge the given options into config.yaml and validate."""
    from relaychat.errors import ConfigError

    store = YamlConfigStore(args.config)
    current = store.load() or Config(api_key="", model="")

    changes = {}
    if args.api_key is not None:
        changes["api_key"] = args.api_key
    if args.model is not None:
        changes["model"] = args.model
    if args.site_url is not None:
        changes["referer_url"] = args.site_url
    if args.site_name is not None:
        changes["display_name"] = args.site_name
    if args.max_tokens is not None:
        changes["max_tokens"] = args.max_tokens or None
    if args.base_url is not None:
        changes["base_url"] = args.base_url

    config = current.with_changes(**changes)
    if changes:
        try:
            config.validate()
        except ConfigError as e:
            print(f"  ✗  {e}")
            sys.exit(1)
        store.save(config)
        print(f"  ✓  Saved to {store.path}")

    print(f"  ├─ API key:    {mask_key(config.api_key) or '(none)'}")
    print(f"  ├─ Model:      {config.model or '(none)'}")
    print(f"  ├─ Endpoint:   {config.base_url}")
    print(f"  ├─ Referer:    {config.referer_url or '-'}")
    print(f"  ├─ Title:      {config.display_name or '-'}")
    print(f"  └─ Max tokens: {config.max_tokens or 'auto'}")


# ---------------------------------------------------------------------------
# relay
# ---------------------------------------------------------------------------

def cmd_relay(args):
    """Run the relay under uvicorn."""
    import uvicorn
    from relaychat.relay import create_app

    settings = get_settings()
    relay_cfg = settings.get("relay", {})
    host = args.host or relay_cfg.get("host", "127.0.0.1")
    port = args.port or relay_cfg.get("port", 3000)

    print(f"  Relay on {host}:{port} → {relay_cfg.get('upstream') or DEFAULT_BASE_URL}")
    uvicorn.run(create_app(settings), host=host, port=port, log_level="info")


# ---------------------------------------------------------------------------
# Parser with aliases
# ---------------------------------------------------------------------------

def _add_command(subparsers, names, help_text, func, setup_fn=None):
    """Register a command under multiple names."""
    p = subparsers.add_parser(names[0], help=help_text, aliases=names[1:])
    p.set_defaults(func=func)
    p.add_argument("--config", "-c", default=None, help="Path to config.yaml")
    if setup_fn:
        setup_fn(p)
    return p


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="relaychat",
        description="relaychat — streaming chat with hosted models.",
        epilog="Run 'relaychat <command> --help' for command-specific options.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", "-V", action="version",
        version=f"relaychat {__version__}",
    )

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    def setup_chat(p):
        p.add_argument("prompt", nargs="*", help="Ask once and exit (omit for interactive)")

    _add_command(sub, ["chat", "talk"], "Chat with the configured model", cmd_chat, setup_chat)

    def setup_models(p):
        p.add_argument("filter", nargs="?", default=None, help="Substring to match in id/name")
        p.add_argument("--category", default=None, help="Programming, Roleplay, Reasoning, ...")
        p.add_argument("--base-url", default=None, help="Override the catalog endpoint")

    _add_command(sub, ["models", "catalog"], "List available models", cmd_models, setup_models)

    def setup_setup(p):
        p.add_argument("--api-key", default=None)
        p.add_argument("--model", "-m", default=None)
        p.add_argument("--site-url", default=None, help="Sent as HTTP-Referer")
        p.add_argument("--site-name", default=None, help="Sent as X-Title")
        p.add_argument("--max-tokens", type=int, default=None, help="0 to use the model default")
        p.add_argument("--base-url", default=None, help="Completions endpoint or relay URL")

    _add_command(sub, ["setup", "configure"], "Save connection settings", cmd_setup, setup_setup)

    def setup_relay(p):
        p.add_argument("--host", default=None, help="Override listen host")
        p.add_argument("--port", "-p", type=int, default=None, help="Override listen port")

    _add_command(sub, ["relay", "serve", "proxy"], "Run the cross-origin relay", cmd_relay, setup_relay)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return

    if args.config:
        load_settings(Path(args.config))
    # Chat output shares the terminal with the log stream; keep it quiet by default.
    setup_logging(get_settings(), default_level="WARNING" if args.func is cmd_chat else "INFO")
    args.func(args)


if __name__ == "__main__":
    main()
