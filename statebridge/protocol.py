from types import MappingProxyType
from typing import Callable, Dict, Mapping, NamedTuple, Optional
import logging

logger = logging.getLogger(__name__)

Handler = Callable[[str], str]

HELP_MESSAGE = (
    "available_commands:ping,"
    "info:{time|money|name|level|level:skill|health|energy},"
    "command:{name}:{args},"
    "help"
)

SEPARATOR = ":"


class Command(NamedTuple):
    verb: str
    argument: str


def parse(message: str) -> Command:
    """ Split a raw line into its verb and the text after the first colon. """
    verb, _, argument = message.partition(SEPARATOR)
    return Command(verb.strip().upper(), argument)


def error(reason: str) -> str:
    return f"error:{reason}"


class CommandRouter:
    """ Turns one text message into exactly one text response.

        Built-in verbs are PING, HELP, INFO and COMMAND. INFO looks its
        uppercased argument up in ``info_handlers``; extra verbs can be
        registered through ``handlers``. Both registries are frozen here
        and shared read-only by every connection.
    """

    BUILTINS = frozenset({"PING", "HELP", "INFO", "COMMAND"})

    def __init__(self,
                 info_handlers: Optional[Mapping[str, Handler]] = None,
                 handlers: Optional[Mapping[str, Handler]] = None) -> None:
        self.info_handlers = self._freeze(info_handlers)
        self.handlers = self._freeze(handlers)

        shadowed = self.BUILTINS.intersection(self.handlers)
        if shadowed:
            raise ValueError(f"Cannot override built-in verbs: {', '.join(sorted(shadowed))}")

    @staticmethod
    def _freeze(handlers: Optional[Mapping[str, Handler]]) -> Mapping[str, Handler]:
        table: Dict[str, Handler] = {}
        for key, handler in (handlers or {}).items():
            table[key.strip().upper()] = handler
        return MappingProxyType(table)

    def dispatch(self, message: str) -> str:
        """ Route the message and return its response. Never raises. """
        try:
            if not message or message.isspace():
                return error("empty_message")

            command = parse(message)
            logger.debug(f"Dispatching {command}")

            if command.verb == "PING":
                return "pong"
            elif command.verb == "HELP":
                return HELP_MESSAGE
            elif command.verb == "INFO":
                return self._info(command.argument)
            elif command.verb == "COMMAND":
                return self._command(command.argument)
            elif command.verb in self.handlers:
                return self.handlers[command.verb](command.argument)

            return error(f"unknown_command:{command.verb}")

        except Exception as e:
            logger.error(f"Error handling command {message!r}: {e}")
            return error(str(e))

    def _info(self, request: str) -> str:
        if not request.strip():
            return error("missing_info_type")

        info_type = request.strip().upper()
        handler = self.info_handlers.get(info_type)
        if handler is None:
            return error(f"unknown_info_type:{info_type}")
        return handler(info_type)

    def _command(self, request: str) -> str:
        # Reserved: game commands have no handler set yet.
        if not request.strip():
            return error("missing_command_name")
        return error("game_commands_not_implemented")
