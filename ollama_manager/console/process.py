import logging
from typing import List

from ollama_manager.supervisor import ServiceState
from ollama_manager.console.handler import (
    display_status, get_supervisor, handle_check_config_command, handle_config_command,
    handle_start_command, handle_stop_command, handle_watch_command, print_help, toggle_verbose_logging,
)

log = logging.getLogger(__name__)


def _restart(args: List[str]) -> None:
    if get_supervisor().check_status().state is ServiceState.RUNNING:
        log.info("Stopping service...")
        handle_stop_command(args)
    if get_supervisor().state is ServiceState.STOPPED:
        log.info("Starting service...")
        handle_start_command()


def execute_command(command: str, args: List[str]) -> bool:
    """
    Executes a single command from the user.

    :param command: The main command string (e.g., 'start', 'config').
    :param args: A list of arguments for the command.
    :return bool: True if the console should exit, False otherwise.
    """
    log.debug(f"Executing command: {command}, args: {args}")
    command_map = {
        "start": handle_start_command,
        "stop": lambda: handle_stop_command(args),
        "restart": lambda: _restart(args),
        "status": display_status,
        "watch": handle_watch_command,
        "check-config": handle_check_config_command,
        "config": lambda: handle_config_command(args),
        "verbose": toggle_verbose_logging,
        "help": print_help,
        "exit": lambda: True,
        "quit": lambda: True,
    }

    if command not in command_map:
        log.info(f"Unknown command: '{command}'. Type 'help' for a list of commands.")
        return False

    return command_map[command]() is True
