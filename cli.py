#!/usr/bin/env python3
"""
Foreman CLI - an autonomous task agent in the terminal.

This is the main entry point for the Foreman command-line interface.
It wraps the agent, the scheduler and the command engine with a rich
terminal UI.

USAGE:
------
  foreman run --goal "task"          - Discover, plan and execute a goal
  foreman chat [--no-stream]         - Interactive chat with tool use
  foreman exec "command"             - Run one command through the engine
  foreman conversations --list       - Manage stored conversations
  foreman config --show | --init     - Show or create the config file

Global options --config PATH and --debug go before the command.
Errors are reported as one line; --debug adds the traceback to the log.
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from rich.logging import RichHandler

from agent import Agent
from autonomous import AutonomousAgent
from config import DEFAULT_CONFIG_DIR, Config, get_config_path, get_default_config, load_config, save_config
from errors import AgentError, SecurityDenied
from memory import ConversationMemory, create_memory
from shell import ApprovalRegistry, ShellExecutor
import ui

logger = logging.getLogger(__name__)

EXIT_INTERRUPTED = 130
CHAT_EXIT_WORDS = {"exit", "quit", ":q"}


# =============================================================================
# CLI ARGUMENT PARSING
# =============================================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="foreman",
        description="Autonomous task agent: plans a goal into steps and executes them",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  foreman run --goal "Create a Python CLI calculator with tests"
  foreman chat
  foreman exec "ls -la" --cwd /tmp --timeout 5000
  foreman conversations --list
  foreman config --init
        """
    )

    parser.add_argument(
        "--config",
        type=Path,
        help="Path to a YAML config file (default: ~/.foreman/config.yaml)"
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Verbose logging with tracebacks"
    )
    parser.add_argument(
        "--version",
        action="version",
        version="Foreman 0.1.0"
    )

    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="Execute a goal autonomously")
    run_parser.add_argument("-g", "--goal", required=True, help="What the agent should accomplish")

    chat_parser = subparsers.add_parser("chat", help="Interactive chat session")
    chat_parser.add_argument(
        "-c", "--conversation",
        metavar="ID",
        help="Resume a stored conversation (see 'foreman conversations --list')"
    )
    chat_parser.add_argument(
        "--no-stream",
        action="store_true",
        help="Wait for complete answers instead of streaming"
    )

    exec_parser = subparsers.add_parser("exec", help="Run a single shell command")
    exec_parser.add_argument("shell_command", metavar="command", help="Command line to run")
    exec_parser.add_argument("--cwd", help="Working directory")
    exec_parser.add_argument("--timeout", type=int, help="Timeout in milliseconds")
    exec_parser.add_argument(
        "--approve",
        action="store_true",
        help="Approve the command's root if it is classified as dangerous"
    )

    conversations_parser = subparsers.add_parser("conversations", help="Manage stored conversations")
    group = conversations_parser.add_mutually_exclusive_group()
    group.add_argument("-l", "--list", action="store_true", help="List conversations (default)")
    group.add_argument("-d", "--delete", metavar="ID", help="Delete one conversation")
    group.add_argument("--clear", action="store_true", help="Delete every conversation")

    config_parser = subparsers.add_parser("config", help="Show or create configuration")
    group = config_parser.add_mutually_exclusive_group()
    group.add_argument("--show", action="store_true", help="Show the effective configuration (default)")
    group.add_argument("--init", action="store_true", help="Write a default config file")

    return parser


def configure_logging(level: str, debug: bool = False) -> None:
    """Route log records through rich, on the UI console."""
    logging.basicConfig(
        level=logging.DEBUG if debug else getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=ui.console, show_path=debug, rich_tracebacks=debug)],
        force=True,
    )
    if not debug:
        logging.getLogger("httpx").setLevel(logging.WARNING)


# =============================================================================
# COMMANDS
# =============================================================================

async def run_goal(config: Config, goal: str) -> int:
    """
    Execute a goal with the autonomous agent.

    Ctrl+C stops the plan after the running wave and aborts running commands.
    """
    agent = Agent(config)
    autonomous = AutonomousAgent(agent)

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, autonomous.interrupt)
    except NotImplementedError:
        logger.debug("Signal handlers unavailable; Ctrl+C will stop the run immediately")

    ui.show_header("Foreman", goal)
    try:
        with ui.show_thinking("Discovering, planning and executing..."):
            success = await autonomous.execute_task(goal)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except NotImplementedError:
            logger.debug("Signal handlers unavailable")
        agent.close()

    if autonomous.current_plan is not None:
        ui.show_plan(autonomous.current_plan)
    ui.show_final_summary(autonomous.current_plan)

    if autonomous.interrupted:
        ui.show_warning("Interrupted by user")
        return EXIT_INTERRUPTED
    return 0 if success else 1


async def run_chat(config: Config, stream: bool = True, conversation_id: Optional[str] = None) -> int:
    """
    Interactive chat loop. Type 'exit' to leave.

    With conversation_id, the stored conversation is resumed from the memory
    file, even when memory.persistent is off.

    Raises:
        ConversationNotFound: If conversation_id is not in the memory file
    """
    memory = _stored_memory(config) if conversation_id else None
    agent = Agent(config, memory=memory)

    try:
        if conversation_id:
            conversation = agent.load_conversation(conversation_id)
            ui.show_header("Foreman Chat", f"Resuming {conversation_id}")
            ui.show_info(f"{len(conversation.messages)} earlier messages loaded. Type 'exit' to quit")
        else:
            conversation_id = agent.start_new_conversation()
            ui.show_header("Foreman Chat", f"Conversation {conversation_id}")
            ui.show_info("Type 'exit' to quit")

        while True:
            try:
                user_input = ui.console.input("[bold green]you>[/bold green] ").strip()
            except EOFError:
                break
            if not user_input:
                continue
            if user_input.lower() in CHAT_EXIT_WORDS:
                break

            try:
                if stream:
                    ui.console.print("[bold blue]foreman>[/bold blue] ", end="")
                    async for chunk in agent.stream_message(user_input, conversation_id=conversation_id):
                        if chunk.content:
                            ui.console.print(chunk.content, end="", markup=False, highlight=False)
                    ui.console.print()
                else:
                    with ui.show_thinking():
                        reply = await agent.send_message(user_input, conversation_id=conversation_id)
                    ui.console.print("[bold blue]foreman>[/bold blue] ", end="")
                    ui.console.print(reply.content, markup=False, highlight=False)
            except AgentError as e:
                ui.console.print()
                ui.show_error(str(e))
    finally:
        agent.close()

    return 0


async def run_exec(
    config: Config,
    command: str,
    cwd: Optional[str] = None,
    timeout_ms: Optional[int] = None,
    approve: bool = False,
) -> int:
    """Run one command through the execution engine and show the result."""
    approvals = ApprovalRegistry()
    if approve:
        approvals.approve(command)

    executor = ShellExecutor(lambda: config.security, approvals=approvals)
    try:
        result = await executor.run(command, cwd=cwd, timeout_ms=timeout_ms)
    except SecurityDenied as e:
        ui.show_error(str(e))
        if e.needs_confirmation:
            ui.show_info("Re-run with --approve to allow it")
        return 1

    ui.show_shell_result(result)
    if result.exit_code is not None:
        return result.exit_code
    return 1


def _stored_memory(config: Config) -> ConversationMemory:
    """The file-backed store at memory.file, whatever memory.persistent says."""
    return create_memory(
        True,
        path=config.memory.file_path,
        max_context_length=config.memory.max_context_length,
        debounce_ms=config.memory.save_debounce_ms,
    )


def manage_conversations(config: Config, args: argparse.Namespace) -> int:
    """List, delete or clear conversations in the memory file."""
    memory = _stored_memory(config)
    try:
        if args.delete:
            if not memory.delete_conversation(args.delete):
                ui.show_error(f"Conversation not found: {args.delete}")
                return 1
            ui.show_success(f"Deleted conversation {args.delete}")
            return 0

        if args.clear:
            if not ui.prompt_continue("Delete every stored conversation?"):
                return 0
            memory.clear_all()
            ui.show_success("All conversations deleted")
            return 0

        ui.show_header("Conversations", str(config.memory.file_path))
        ui.show_conversations(memory.list_conversations())
        return 0
    finally:
        memory.close()


def manage_config(config: Config, args: argparse.Namespace) -> int:
    if args.init:
        path = DEFAULT_CONFIG_DIR / "config.yaml"
        if path.exists() and not ui.prompt_continue(f"{path} exists. Overwrite?"):
            return 0
        save_config(get_default_config(), path)
        ui.show_success(f"Wrote {path}")
        return 0

    source = args.config or get_config_path()
    ui.show_info(f"Config file: {source or 'none (defaults)'}")
    ui.show_config(config)
    return 0


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

async def async_main(args: argparse.Namespace, config: Config) -> int:
    """
    Dispatch to the selected command.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    if args.command == "run":
        return await run_goal(config, args.goal)
    if args.command == "chat":
        return await run_chat(config, stream=not args.no_stream, conversation_id=args.conversation)
    if args.command == "exec":
        return await run_exec(config, args.shell_command, cwd=args.cwd, timeout_ms=args.timeout, approve=args.approve)
    if args.command == "conversations":
        return manage_conversations(config, args)
    if args.command == "config":
        return manage_config(config, args)
    return 2


def main() -> None:
    """Main entry point for the CLI."""
    parser = create_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(0)

    try:
        config = load_config(args.config)
    except AgentError as e:
        configure_logging("INFO", args.debug)
        ui.show_error(str(e))
        sys.exit(1)

    configure_logging(config.log_level, args.debug)

    try:
        exit_code = asyncio.run(async_main(args, config))
    except KeyboardInterrupt:
        ui.console.print("\n")
        ui.show_warning("Interrupted")
        exit_code = EXIT_INTERRUPTED
    except AgentError as e:
        logger.debug("Command failed", exc_info=True)
        ui.show_error(str(e))
        exit_code = 1

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
