from functools import lru_cache
from typing import Set, Dict
from enum import Enum, auto
import json

from importlib.resources import files
from importlib.resources.abc import Traversable
from referencing import Registry, Resource
from jsonschema import Draft202012Validator

from batchhost.bhp.protocol.errors import ProtocolError
from batchhost.bhp.protocol.messages import Message, MessageType


class Endpoint(Enum):
    HOST = auto()
    HANDLER = auto()


def _schema_dir() -> Traversable:
    return files("batchhost.bhp.protocol") / "schemas" / "1.0"


@lru_cache(maxsize=1)
def _load_schemas() -> Dict[str, dict]:
    schemas: Dict[str, dict] = {}
    for entry in _schema_dir().iterdir():
        if not entry.name.endswith(".json"):
            continue
        schemas[entry.name[: -len(".json")]] = json.loads(entry.read_text(encoding="utf-8"))
    return schemas


class ProtocolValidator:
    """
    Enforces BHP message directionality and schema validity.
    """

    HOST_TO_HANDLER: Set[MessageType] = {
        MessageType.INVOKE,
        MessageType.SHUTDOWN,
    }

    HANDLER_TO_HOST: Set[MessageType] = {
        MessageType.READY,
        MessageType.LOG,
        MessageType.RESULT,
        MessageType.ERROR,
        MessageType.EXIT,
    }

    ALL_MESSAGES: Set[MessageType] = HOST_TO_HANDLER | HANDLER_TO_HOST

    def __init__(self) -> None:
        schemas = _load_schemas()
        self._registry = self._build_registry(schemas)
        self._validators = self._build_validators(schemas)

    # ----------------------------
    # Schema loading
    # ----------------------------

    def _build_registry(self, schemas: Dict[str, dict]) -> Registry:
        registry = Registry()
        for schema in schemas.values():
            registry = registry.with_resource(
                schema["$id"],
                Resource.from_contents(schema),
            )
        return registry

    def _build_validators(self, schemas: Dict[str, dict]) -> Dict[MessageType, Draft202012Validator]:
        validators: Dict[MessageType, Draft202012Validator] = {}

        for msg_type in self.ALL_MESSAGES:
            schema = schemas.get(msg_type.value)
            if schema is None:
                continue
            validators[msg_type] = Draft202012Validator(
                schema=schema,
                registry=self._registry,
            )

        return validators

    # ----------------------------
    # Validation
    # ----------------------------

    def validate(self, msg: Message, *, sender: Endpoint) -> None:
        # Directionality
        if sender is Endpoint.HOST:
            if msg.type not in self.HOST_TO_HANDLER:
                raise ProtocolError(
                    f"Host is not allowed to send '{msg.type.value}'"
                )

        elif sender is Endpoint.HANDLER:
            if msg.type not in self.HANDLER_TO_HOST:
                raise ProtocolError(
                    f"Handler is not allowed to send '{msg.type.value}'"
                )

        else:
            raise ProtocolError("Unknown sender endpoint")

        # Schema validation
        try:
            validator = self._validators[msg.type]
        except KeyError:
            raise ProtocolError(
                f"No schema registered for '{msg.type.value}'"
            )

        instance = msg.to_dict()

        errors = sorted(validator.iter_errors(instance), key=str)
        if errors:
            err = errors[0]
            raise ProtocolError(
                f"Invalid {msg.type.value} message: {err.message}"
            )
