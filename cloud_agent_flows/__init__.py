import logging
from os import getenv
import sys


from blessings import Terminal

from .controller import flows
from .controller.agent_service import AgentService
from .controller.connection import ConnectionExchange
from .controller.credential_exchange import CredentialExchange
from .controller.flows import FlowCoordinator, FlowResult, FlowVariant
from .controller.presentation_exchange import PresentationExchange


LOG_LEVEL = getenv("LOG_LEVEL", "info")
LOGGING_SET = False


class ColorFormatter(logging.Formatter):
    def __init__(self, fmt: str):
        self.default = logging.Formatter(fmt)
        term = Terminal()
        self.formats = {
            logging.DEBUG: logging.Formatter(f"{term.dim}{fmt}{term.normal}"),
            logging.WARNING: logging.Formatter(f"{term.yellow}{fmt}{term.normal}"),
            logging.ERROR: logging.Formatter(f"{term.red}{fmt}{term.normal}"),
        }

    def format(self, record):
        formatter = self.formats.get(record.levelno, self.default)
        return formatter.format(record)


def logging_to_stdout():
    global LOGGING_SET
    if LOGGING_SET:
        return

    if sys.stdout.isatty():
        logger = logging.getLogger("cloud_agent_flows")
        logger.setLevel(LOG_LEVEL.upper())
        ch = logging.StreamHandler()
        ch.setLevel(LOG_LEVEL.upper())
        ch.setFormatter(ColorFormatter("%(message)s"))
        logger.addHandler(ch)
    else:
        logging.basicConfig(
            stream=sys.stdout,
            level=LOG_LEVEL.upper(),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        logging.getLogger("cloud_agent_flows").setLevel(LOG_LEVEL.upper())

    LOGGING_SET = True


__all__ = [
    "AgentService",
    "ConnectionExchange",
    "CredentialExchange",
    "FlowCoordinator",
    "FlowResult",
    "FlowVariant",
    "PresentationExchange",
    "flows",
]
