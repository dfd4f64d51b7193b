"""agent_panel.main

Command-line entry point: send one prompt to one agent and print the result.

Run:
    agent-panel --agent Main "What is in this repo?"
    agent-panel --local --agent Main "Hi"

`--local` serves the chat events in-process from the OpenAI API (FAKE MODE
without OPENAI_API_KEY); otherwise the Socket.IO backend at
`AGENT_PANEL_SERVER_URL` is used.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from PySide6 import QtCore

from .agents import Agent, AgentRoster, AgentRosterError, load_agents, save_agents
from .config import PanelConfig, load_config
from .engine import ChatEngine, EngineError
from .history_store import JsonHistoryStore
from .messages import ResponseMessage
from .metrics import MetricsReport
from .prefs import load_defaults, load_user_profile, save_defaults, set_selected_tools
from .reducer import PanelState
from .scheduler import QtScheduler


_LOG = logging.getLogger("agent_panel")
_LOG_INITIALIZED = False


def _repo_root() -> Path:
    return Path.cwd()


def setup_logging(base_dir: Path, *, verbose: bool = False) -> Path:
    """Configure terminal + file logging (clears the file on startup)."""

    global _LOG_INITIALIZED  # noqa: PLW0603
    log_path = (base_dir / "chat_history" / "agent_panel.log").resolve()
    if _LOG_INITIALIZED:
        return log_path

    log_path.parent.mkdir(parents=True, exist_ok=True)
    _LOG.setLevel(logging.DEBUG if verbose else logging.INFO)
    _LOG.propagate = False

    fh = logging.FileHandler(str(log_path), mode="w", encoding="utf-8")
    sh = logging.StreamHandler(stream=sys.stderr)
    sh.setLevel(logging.DEBUG if verbose else logging.WARNING)
    fmt = logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    fh.setFormatter(fmt)
    sh.setFormatter(fmt)

    _LOG.handlers.clear()
    _LOG.addHandler(fh)
    _LOG.addHandler(sh)
    _LOG_INITIALIZED = True

    _LOG.info("=== Agent panel start ===")
    _LOG.info("log_path=%s", str(log_path))
    return log_path


def _default_roster(cfg: PanelConfig) -> AgentRoster:
    return AgentRoster([Agent(agent_id="main", name="Main", model=cfg.openai_model, context_size=cfg.default_thinking_tokens)])


def load_roster(path: Optional[Path], cfg: PanelConfig) -> AgentRoster:
    """Roster from `path`; a missing file is seeded with the default roster."""

    if path is None:
        return _default_roster(cfg)
    if not path.exists():
        roster = _default_roster(cfg)
        save_agents(path, roster)
        _LOG.info("agents_file_seeded path=%s", str(path))
        return roster
    return load_agents(path)


def _parse_tools(raw: Optional[str]) -> Optional[list[str]]:
    if raw is None:
        return None
    return [t.strip() for t in raw.split(",") if t.strip()]


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="agent-panel", description="Send a prompt to an agent and stream its answer.")
    p.add_argument("prompt", help="prompt text")
    p.add_argument("--agent", default="main", help="agent id or name (default: main)")
    p.add_argument("--agents-file", type=Path, default=None, help="JSON roster ({\"agents\": [...]})")
    src = p.add_mutually_exclusive_group()
    src.add_argument("--server", default=None, help="Socket.IO backend URL")
    src.add_argument("--local", action="store_true", help="serve events in-process from the OpenAI API")
    p.add_argument("--tools", default=None, help="comma-separated tools; remembered for the agent")
    p.add_argument("--project-path", default=None)
    p.add_argument("--container-id", default=None)
    p.add_argument("--timeout", type=float, default=300.0, help="give up after this many seconds")
    p.add_argument("--base-dir", type=Path, default=None, help="where chat_history/ lives (default: cwd)")
    p.add_argument("-v", "--verbose", action="store_true")
    return p


def _last_response(state: PanelState, request_id: str) -> Optional[ResponseMessage]:
    for m in reversed(state.messages):
        if isinstance(m, ResponseMessage) and m.request_id == request_id:
            return m
    return None


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    base_dir = (args.base_dir or _repo_root()).resolve()
    setup_logging(base_dir, verbose=args.verbose)
    cfg = load_config()

    try:
        roster = load_roster(args.agents_file, cfg)
    except (AgentRosterError, OSError) as e:
        print(f"agent-panel: {e}", file=sys.stderr)
        return 2
    agent = roster.find(args.agent)
    if agent is None:
        print(f"agent-panel: unknown agent: {args.agent}", file=sys.stderr)
        return 2

    defaults = load_defaults(base_dir)
    tools = _parse_tools(args.tools)
    if tools is not None:
        defaults = set_selected_tools(defaults, agent.agent_id, tools)
        try:
            save_defaults(base_dir, defaults)
        except OSError:
            _LOG.exception("defaults_save_failed agent_id=%s", agent.agent_id)

    app = QtCore.QCoreApplication.instance() or QtCore.QCoreApplication(sys.argv[:1])
    store = JsonHistoryStore(base_dir)

    if args.local:
        from .local_backend import LocalBackend

        transport = LocalBackend(store=store, roster=roster, config=cfg)
    else:
        from .transport import SocketIOTransport, TransportError

        transport = SocketIOTransport(args.server or cfg.server_url)
        try:
            transport.connect()
        except TransportError as e:
            print(f"agent-panel: {e}", file=sys.stderr)
            return 1

    engine = ChatEngine(
        transport=transport,
        history=store,
        roster=roster,
        scheduler=QtScheduler(),
        config=cfg,
        user_profile=load_user_profile(base_dir),
        defaults=defaults,
    )
    exit_code = {"rc": 1}
    holder: dict[str, str] = {}

    def on_report(report: MetricsReport, text: str) -> None:
        if report.request_id != holder.get("rid"):
            return
        msg = _last_response(engine.state, report.request_id)
        if msg is not None:
            print(msg.content)
        print(text, file=sys.stderr)
        exit_code["rc"] = 0
        app.quit()

    def on_state(state: PanelState) -> None:
        rid = holder.get("rid")
        if not rid or engine.tracker.is_pending(rid):
            return
        # Errors and aborts end the request without a report.
        last = state.messages[-1] if state.messages else None
        if isinstance(last, ResponseMessage) and (last.id.startswith("error-") or last.id.startswith("aborted-")):
            print(last.content, file=sys.stderr)
            app.quit()

    engine.on_report(on_report)
    engine.subscribe(on_state)

    try:
        engine.select_agent(agent.agent_id, project_path=args.project_path, container_id=args.container_id)
        rid = engine.send_prompt(args.prompt)
    except EngineError as e:
        print(f"agent-panel: {e}", file=sys.stderr)
        return 2
    if rid is None:
        print("agent-panel: nothing to send", file=sys.stderr)
        return 2
    holder["rid"] = rid
    # The backend may already have answered with an error.
    QtCore.QTimer.singleShot(0, lambda: on_state(engine.state))

    def on_timeout() -> None:
        _LOG.warning("timeout request_id=%s after_s=%.0f", rid, args.timeout)
        engine.abort(rid)
        app.quit()

    QtCore.QTimer.singleShot(int(args.timeout * 1000), on_timeout)
    try:
        app.exec()
    finally:
        if args.local:
            transport.shutdown()
        else:
            transport.disconnect()
    return exit_code["rc"]


if __name__ == "__main__":
    raise SystemExit(main())
