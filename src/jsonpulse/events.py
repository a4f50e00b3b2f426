from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class EventKind(Enum):
    OPEN_OBJECT = "open_object"
    KEY = "key"
    VALUE = "value"
    CLOSE_OBJECT = "close_object"
    OPEN_ARRAY = "open_array"
    CLOSE_ARRAY = "close_array"
    ERROR = "error"


@dataclass(frozen=True)
class ParseEvent:
    kind: EventKind
    payload: object = None


class EventRecorder:
    """Attach to every handler slot of a tokenizer and keep the event log.

        recorder = EventRecorder(Tokenizer())
        recorder.tokenizer.write('{"a":1}')
        recorder.kinds()  # [OPEN_OBJECT, KEY, VALUE, CLOSE_OBJECT]
    """

    def __init__(self, tokenizer) -> None:
        self.tokenizer = tokenizer
        self.events: list[ParseEvent] = []
        tokenizer.on_open_object = lambda key=None: self._record(
            EventKind.OPEN_OBJECT, key
        )
        tokenizer.on_key = lambda name: self._record(EventKind.KEY, name)
        tokenizer.on_value = lambda value: self._record(EventKind.VALUE, value)
        tokenizer.on_close_object = lambda: self._record(EventKind.CLOSE_OBJECT)
        tokenizer.on_open_array = lambda: self._record(EventKind.OPEN_ARRAY)
        tokenizer.on_close_array = lambda: self._record(EventKind.CLOSE_ARRAY)
        tokenizer.on_error = lambda cause: self._record(EventKind.ERROR, cause)

    def _record(self, kind: EventKind, payload=None) -> None:
        self.events.append(ParseEvent(kind, payload))

    def kinds(self) -> list[EventKind]:
        return [event.kind for event in self.events]

    def payloads(self, kind: EventKind) -> list:
        return [event.payload for event in self.events if event.kind is kind]

    def clear(self) -> None:
        self.events.clear()
