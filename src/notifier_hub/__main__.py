"""Main entry point for running a notifier-hub session."""

import asyncio
import contextlib

import notifier_hub.entrypoint
from notifier_hub.core.error_handling import (
    configure_logging,
    install_global_exception_hooks,
    register_asyncio_exception_handler,
)


def main() -> None:
    """Run the application entry point."""
    configure_logging()
    install_global_exception_hooks()
    with asyncio.Runner() as runner:
        register_asyncio_exception_handler(runner.get_loop())
        try:
            runner.run(notifier_hub.entrypoint.main())
        except KeyboardInterrupt:
            # Release leadership before the event loop is torn down.
            with contextlib.suppress(KeyboardInterrupt):
                runner.run(notifier_hub.entrypoint.shutdown())


if __name__ == "__main__":
    main()
