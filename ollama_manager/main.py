import sys
import logging
import threading

import setproctitle

# Basic console logger for messages BEFORE full setup is complete.
# This logger will be replaced by the full setup later.
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)-8s - [console] - %(message)s',
    stream=sys.stdout
)
log = logging.getLogger("console")

import ollama_manager.console as console
from ollama_manager.log import setup_logging

# --- Global State ---
CONSOLE_LOCK = threading.Lock()


def main() -> None:
    """The main entry point for the console application."""
    setproctitle.setproctitle("Ollama Manager - Console")
    setup_logging(logging.INFO)

    # Non-interactive mode for one-off commands. The service keeps running
    # after the command returns because it is launched detached.
    if len(sys.argv) > 1:
        command, args = sys.argv[1].lower(), sys.argv[2:]
        if "--verbose" in args:
            console.toggle_verbose_logging()
            args.remove("--verbose")

        console.execute_command(command, args)
        return

    # Interactive mode
    print("--- Ollama Service Management Console ---")
    print("Type 'help' for a list of commands.")

    supervisor = console.get_supervisor()
    with CONSOLE_LOCK:
        report = supervisor.check_status()
        log.debug(f"Console startup - service running: {report.is_running}")
    print(f"Ollama service is currently {report.state.value.upper()}.")

    try:
        while True:
            try:
                # The input prompt must be outside the lock to not block background threads
                command_line_str = input("> ")
                with CONSOLE_LOCK:
                    if not command_line_str.strip():
                        continue
                    command_line = command_line_str.strip().split()
                    command, args = command_line[0].lower(), command_line[1:]
                    log.debug(f"Received command: {command}, args: {args}")

                    if console.execute_command(command, args):
                        break

            except (KeyboardInterrupt, EOFError):
                with CONSOLE_LOCK:
                    log.warning("\nExiting console due to interrupt.")
                    break
            except Exception as e:
                with CONSOLE_LOCK:
                    log.error(f"An unexpected error occurred in the console: {e}", exc_info=True)
    finally:
        supervisor.shutdown()


if __name__ == "__main__":
    main()
    print("Exiting Ollama Manager console. See you next time!")
