"""Command registry: type tag -> deserializer.

A registry is built once at startup (:func:`build_default_registry`) and
handed to whatever rehydrates history. Deserialization is tolerant: records
from newer or older builds that cannot be understood are logged and dropped
instead of raising.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from .commands import ALL_COMMANDS, Command
from .migrations import MigrationEngine
from .serialization import JsonSafetyError, to_json_safe

logger = logging.getLogger(__name__)

Deserializer = Callable[[dict[str, Any], "CommandRegistry"], Command]


class CommandRegistry:
    def __init__(self, migrations: Optional[MigrationEngine] = None):
        self.migrations = migrations or MigrationEngine()
        self._deserializers: dict[str, Deserializer] = {}

    def register(self, command_type: str, deserializer: Deserializer) -> None:
        if command_type in self._deserializers:
            logger.warning("Command type %r registered twice; the later registration wins", command_type)
        self._deserializers[command_type] = deserializer

    def is_registered(self, command_type: str) -> bool:
        return command_type in self._deserializers

    @property
    def types(self) -> list[str]:
        return sorted(self._deserializers)

    def deserialize(self, record: Any) -> Optional[Command]:
        """Migrate, validate and rebuild one record. Returns None if unusable."""
        if not isinstance(record, dict):
            logger.error("Skipping non-mapping command record: %r", type(record).__name__)
            return None

        migrated = self.migrations.migrate(record)
        try:
            migrated = to_json_safe(migrated)
        except JsonSafetyError as e:
            logger.error("Skipping invalid serialized command %r: %s", record.get("type"), e)
            return None

        command_type = migrated["type"]
        deserializer = self._deserializers.get(command_type)
        if deserializer is None:
            logger.warning("Unknown command type %r; skipping", command_type)
            return None

        try:
            return deserializer(migrated, self)
        except (KeyError, TypeError, ValueError) as e:
            logger.error("Failed to deserialize %s command %s: %s", command_type, migrated["payload"]["id"], e)
            return None

    def deserialize_all(self, records: Optional[list[Any]]) -> list[Command]:
        commands = []
        for record in records or []:
            command = self.deserialize(record)
            if command is not None:
                commands.append(command)
        return commands


def build_default_registry() -> CommandRegistry:
    registry = CommandRegistry()
    for command_cls in ALL_COMMANDS:
        registry.register(command_cls.type, command_cls.from_serialized)
    return registry
