import time
import logging
from typing import List, Optional

from ollama_manager.local import effective_settings
from ollama_manager.log import set_console_level
from ollama_manager.supervisor import ServiceResult, ServiceState, ServiceSupervisor, SubscriptionGroup
from ollama_manager.supervisor.locator import check_configuration

log = logging.getLogger(__name__)

_supervisor: Optional[ServiceSupervisor] = None


def confirm_stop_prompt() -> bool:
    """Asks the user to confirm stopping the service."""
    try:
        answer = input("Stop the Ollama service? Running chats will be interrupted. [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ('y', 'yes')


def get_supervisor() -> ServiceSupervisor:
    """Returns the console's single ServiceSupervisor, creating it on first use."""
    global _supervisor
    if _supervisor is None:
        _supervisor = ServiceSupervisor(confirm_stop=confirm_stop_prompt)
    return _supervisor


def set_supervisor(supervisor: Optional[ServiceSupervisor]) -> None:
    global _supervisor
    _supervisor = supervisor


def format_megabytes(num_bytes: int) -> str:
    mb = num_bytes / 1024 / 1024
    if mb < 1024:
        return f"{mb:.1f} MB"
    return f"{mb / 1024:.1f} GB"


def report_result(action: str, result: ServiceResult) -> None:
    """Prints the outcome of a start or stop call."""
    if result.skipped:
        print(f"{action.capitalize()} skipped: {result.message}")
    elif result.success:
        print(result.message or f"{action.capitalize()} succeeded.")
    else:
        print(f"ERROR ({result.error.value}): {result.message}")


def handle_start_command() -> None:
    print("Starting Ollama service (this can take up to "
          f"{effective_settings.READINESS_TIMEOUT:.0f} seconds)...")
    report_result("start", get_supervisor().start())


def handle_stop_command(args: List[str]) -> None:
    supervisor = get_supervisor()
    # The cached state may predate a service started elsewhere.
    supervisor.check_status()
    confirm = (lambda: True) if "--yes" in args or "-y" in args else None
    report_result("stop", supervisor.stop(confirm=confirm))


def display_status() -> None:
    """Re-probes the service and displays its state and memory usage."""
    supervisor = get_supervisor()
    report = supervisor.check_status()

    print("\n--- Ollama Service Status ---")
    print(f"  State       : {report.state.value.upper()}")
    print(f"  Process     : {'found' if report.is_running else 'not found'}")
    if report.state is ServiceState.RUNNING:
        print(f"  RAM         : {format_megabytes(report.ram_usage_bytes)}")
    process = supervisor.process
    if process is not None and process.poll() is None:
        print(f"  Spawned PID : {process.pid}")
    elif report.is_running:
        print("  Spawned PID : none (started outside this console)")
    print(f"  API         : {supervisor.readiness_url}")
    print("-" * 29 + "\n")


def handle_watch_command() -> None:
    """
    Prints live status, memory and error events until interrupted with Ctrl+C.
    """
    supervisor = get_supervisor()
    print("\n--- Watching service events (Press Ctrl+C to stop) ---\n")
    print(f"State: {supervisor.state.value.upper()}")

    with SubscriptionGroup(supervisor.events) as group:
        group.bind(
            status=lambda state: print(f"State: {state.value.upper()}"),
            ram_usage=lambda num_bytes: print(f"RAM: {format_megabytes(num_bytes)}"),
            error=lambda message: print(f"ERROR: {message}"),
        )
        try:
            while True:
                time.sleep(1)
        except KeyboardInterrupt:
            print("\n--- Watch stopped. Returning to console. ---")


def _config_show() -> None:
    print("\n--- Current Configuration ---")
    print(f"(Overrides file: {effective_settings.OVERRIDES_JSON_PATH})")
    for key, value in effective_settings.modifiable_values().items():
        print(f"  {key} = {value}")
    print("---")
    print("Use 'config set <KEY> <VALUE>' to change a setting. Changes apply from the next start.")
    print("-----------------------------\n")


def _config_set(args: List[str]) -> None:
    if len(args) < 2:
        print("Usage: config set <SETTING_NAME> <VALUE>")
        return
    key, value_str = args[0].upper(), " ".join(args[1:])
    success, message = effective_settings.update_setting(key, value_str)
    print(message if success else f"Error: {message}")


def _config_help() -> None:
    print("\nConfig Command Help:")
    print("  config show                - Display all modifiable settings.")
    print("  config set KEY VALUE       - Change a setting. Applies from the next start.")
    print("  config help                - Show this help message.")
    print("Use 'check-config' to see where the Ollama binary is looked for.")


def handle_config_command(args: List[str]) -> None:
    """
    Handles all sub-commands for the 'config' command-line interface.

    :param args: A list of string arguments following the 'config' command.
    """
    sub_command = args[0].lower() if args else "show"

    if sub_command == "show":
        _config_show()
    elif sub_command == "set":
        _config_set(args[1:])
    elif sub_command == "help":
        _config_help()
    else:
        print(f"Unknown config sub-command: '{sub_command}'. Type 'config help' for available commands.")


def handle_check_config_command() -> None:
    check_configuration(get_supervisor().locator)


def toggle_verbose_logging() -> None:
    """Toggles verbose (DEBUG level) logging for the console handler."""
    effective_settings.VERBOSE_LOGGING = not effective_settings.VERBOSE_LOGGING
    new_level = logging.DEBUG if effective_settings.VERBOSE_LOGGING else logging.INFO

    status = "ON" if effective_settings.VERBOSE_LOGGING else "OFF"
    if set_console_level(new_level):
        print(f"Verbose console logging is now {status}.")
        log.debug("Debug logging test: This message should only appear when verbose is ON.")
    else:
        print("Could not find console handler to modify level.")


def print_help() -> None:
    """Prints the main help text for the console."""
    print("\nAvailable commands:")
    print("  start                  - Start the Ollama service and wait until it is ready.")
    print("  stop [--yes]           - Stop the Ollama service (asks for confirmation).")
    print("  restart                - Stop and then start the service.")
    print("  status                 - Show the current state and memory usage.")
    print("  watch                  - Print live status, memory and error events.")
    print("  check-config           - Show where the Ollama binary is looked for.")
    print("  config <cmd>           - Manage configuration. Use 'config help' for more details.")
    print("  verbose                - Toggle detailed DEBUG log output in the console.")
    print("  exit                   - Exit the console (stops a service started from it).")
    print()
