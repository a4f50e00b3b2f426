from __future__ import annotations

import asyncio
import json

import pytest

from jsonpulse.errors import JsonSyntaxError, TransportError
from jsonpulse.materializer import Materializer, materialize
from jsonpulse.session import StreamSession
from jsonpulse.tokenizer import IjsonTokenizer, TokenizerBase
from jsonpulse.transport import IterableTransport
from jsonpulse.values import EMPTY

DOCUMENTS = [
    '{"a":1,"b":[2,3]}',
    '{"user":{"name":"Alice","tags":["t1","t2"],"meta":{"n":2}},"logs":[]}',
    '[1,"two",true,null,{"k":[{}]},[[-1.5e2]]]',
    '{"say":"\\"hi\\" {[,:]}","path":"C:\\\\tmp","empty":""}',
    '{"émoji":"🎉","n":-0.25,"ok":false}',
]


def _run(text: str, *, chunk_size: int = 1, tokenizer=None) -> Materializer:
    materializer = Materializer(tokenizer)
    for i in range(0, len(text), chunk_size):
        materializer.feed(text[i : i + chunk_size])
    materializer.finish()
    return materializer


def _session() -> StreamSession:
    return StreamSession("mem://document")


class TestChunkSplitting:
    @pytest.mark.parametrize("text", DOCUMENTS)
    def test_every_two_way_split_matches_whole_parse(self, text):
        expected = json.loads(text)
        for cut in range(len(text) + 1):
            assert materialize([text[:cut], text[cut:]]) == expected, cut

    @pytest.mark.parametrize("text", DOCUMENTS)
    def test_single_characters(self, text):
        assert _run(text).root == json.loads(text)

    @pytest.mark.parametrize("chunk_size", [2, 3, 7, 64])
    def test_fixed_size_chunks(self, chunk_size):
        text = json.dumps({f"key_{i}": [i, str(i), i / 4] for i in range(30)})
        assert _run(text, chunk_size=chunk_size).root == json.loads(text)

    def test_documented_split(self):
        assert materialize(['{"a":1,"', 'b":[2,3', "]}"]) == {"a": 1, "b": [2, 3]}

    def test_bytes_split_inside_multibyte_character(self):
        data = '{"k":"é🎉"}'.encode("utf-8")
        chunks = [data[i : i + 1] for i in range(len(data))]
        assert materialize(chunks) == {"k": "é🎉"}

    @pytest.mark.parametrize("text", DOCUMENTS)
    def test_ijson_tokenizer_builds_same_tree(self, text):
        assert _run(text, tokenizer=IjsonTokenizer()).root == json.loads(text)


class TestPartials:
    def test_flat_object_publishes_n_plus_one_partials(self):
        materializer = Materializer()
        seen = []
        materializer.on_partial(seen.append)
        materializer.feed('{"a":1,"b":"x","c":true,"d":null}')
        assert len(seen) == 5

    def test_open_events_do_not_publish(self):
        materializer = Materializer()
        seen = []
        materializer.on_partial(seen.append)
        materializer.feed('{"a":[{"b":')
        assert seen == []

    def test_root_is_the_same_live_object(self):
        materializer = Materializer()
        seen = []
        materializer.on_partial(seen.append)
        materializer.feed('{"a":1,')
        materializer.feed('"b":2}')
        assert len(seen) == 3
        assert all(root is seen[0] for root in seen)
        assert seen[0] == {"a": 1, "b": 2}

    def test_partial_state_is_visible_mid_stream(self):
        materializer = Materializer()
        materializer.feed('{"items":[1,2,')
        assert materializer.root == {"items": [1, 2]}
        assert materializer.open_frames == 2

    def test_clone_is_isolated_from_later_mutation(self):
        materializer = Materializer()
        materializer.feed('{"items":[1,')
        frozen = materializer.clone()
        materializer.feed("2]}")
        assert frozen == {"items": [1]}
        assert materializer.root == {"items": [1, 2]}

    def test_root_is_empty_before_first_open(self):
        materializer = Materializer()
        assert materializer.root is EMPTY
        assert materializer.clone() is EMPTY
        materializer.feed("   ")
        assert materializer.root is EMPTY

    def test_top_level_scalar_becomes_root(self):
        assert materialize(['"hel', 'lo"']) == "hello"
        assert materialize(["4", "2"]) == 42
        assert materialize(["nu", "ll"]) is None

    def test_unbalanced_input_leaves_frames_open(self):
        materializer = _run('{"a":[1,2')
        assert materializer.open_frames == 2
        assert materializer.root == {"a": [1, 2]}

    def test_value_without_key_is_dropped(self):
        materializer = Materializer(TokenizerBase())
        tokenizer = materializer.tokenizer
        tokenizer.on_open_object()
        tokenizer.on_value(1)
        tokenizer.on_key("a")
        tokenizer.on_value(2)
        assert materializer.root == {"a": 2}

    def test_open_object_with_explicit_key(self):
        materializer = Materializer(TokenizerBase())
        tokenizer = materializer.tokenizer
        tokenizer.on_open_object()
        tokenizer.on_key("outer")
        tokenizer.on_open_object("inner")
        assert materializer.root == {"outer": {"inner": None}}
        tokenizer.on_value(1)
        tokenizer.on_close_object()
        tokenizer.on_close_object()
        assert materializer.root == {"outer": {"inner": 1}}


class TestListeners:
    def test_duplicate_registration_is_one_entry(self):
        materializer = Materializer()
        seen = []
        materializer.on_partial(seen.append)
        materializer.on_partial(seen.append)
        materializer.feed("[1]")
        assert len(seen) == 2

    def test_unsubscribe(self):
        materializer = Materializer()
        seen = []
        unsubscribe = materializer.on_partial(seen.append)
        materializer.feed("[1,")
        unsubscribe()
        unsubscribe()
        materializer.feed("2]")
        assert len(seen) == 1

    def test_multiple_listeners_all_called(self):
        materializer = Materializer()
        first, second = [], []
        materializer.on_partial(first.append)
        materializer.on_partial(second.append)
        materializer.feed('{"a":1}')
        assert len(first) == len(second) == 2

    def test_end_fires_once_on_finish(self):
        materializer = Materializer()
        ended = []
        materializer.on_end(lambda: ended.append(True))
        materializer.feed("[]")
        materializer.finish()
        materializer.finish()
        assert ended == [True]
        assert materializer.finished

    def test_feed_after_finish_raises(self):
        materializer = _run("[]")
        with pytest.raises(RuntimeError, match="finished"):
            materializer.feed("[")

    def test_error_is_published_without_rollback(self):
        materializer = Materializer()
        errors = []
        materializer.on_error(errors.append)
        materializer.feed('{"a":1,"b":nope,"c":2}')
        assert len(errors) == 1
        assert isinstance(errors[0], JsonSyntaxError)
        assert materializer.root == {"a": 1, "c": 2}

    def test_strict_tokenizer_reports_error_before_finish(self):
        materializer = Materializer(IjsonTokenizer())
        errors = []
        materializer.on_error(errors.append)
        materializer.feed('{"a": x')
        materializer.feed("}")
        assert len(errors) == 1
        assert isinstance(errors[0], JsonSyntaxError)
        assert materializer.tokenizer.failed

    def test_materialize_raises_first_error(self):
        with pytest.raises(JsonSyntaxError):
            materialize(['{"a":"unterminated'])


class TestPump:
    async def test_start_streams_to_end(self):
        materializer = Materializer()
        partials, ended = [], []
        materializer.on_partial(lambda root: partials.append(json.dumps(root)))
        materializer.on_end(lambda: ended.append(True))

        await materializer.start(_session(), IterableTransport(['{"a":', "1,", '"b":[2]}']))
        await materializer.wait()

        full = '{"a": 1, "b": [2]}'
        assert partials == ['{"a": 1}', full, full, full]
        assert ended == [True]
        assert materializer.root == {"a": 1, "b": [2]}

    async def test_start_accepts_async_source(self):
        async def chunks():
            for chunk in (b'{"k":', b'"v"}'):
                await asyncio.sleep(0)
                yield chunk

        materializer = Materializer()
        await materializer.start(_session(), IterableTransport(chunks()))
        await materializer.wait()
        assert materializer.root == {"k": "v"}

    async def test_connection_failure_raises_from_start(self):
        def refuse(session):
            raise ConnectionRefusedError("nobody home")

        materializer = Materializer()
        with pytest.raises(TransportError) as info:
            await materializer.start(_session(), IterableTransport(refuse))
        assert isinstance(info.value.__cause__, ConnectionRefusedError)
        assert materializer.task is None

    async def test_read_failure_becomes_error_notification(self):
        async def chunks():
            yield '{"a":1,'
            raise ConnectionResetError("peer went away")

        materializer = Materializer()
        errors, ended = [], []
        materializer.on_error(errors.append)
        materializer.on_end(lambda: ended.append(True))

        await materializer.start(_session(), IterableTransport(chunks()))
        await materializer.wait()

        assert len(errors) == 1
        assert isinstance(errors[0], TransportError)
        assert isinstance(errors[0].__cause__, ConnectionResetError)
        assert ended == []
        assert materializer.root == {"a": 1}

    async def test_consumer_fault_is_not_caught(self):
        materializer = Materializer()

        def explode(root):
            raise ValueError("bad subscriber")

        materializer.on_partial(explode)
        await materializer.start(_session(), IterableTransport(["[1]"]))
        with pytest.raises(ValueError, match="bad subscriber"):
            await materializer.wait()

    async def test_start_twice_raises(self):
        materializer = Materializer()
        await materializer.start(_session(), IterableTransport(["[]"]))
        with pytest.raises(RuntimeError, match="already started"):
            await materializer.start(_session(), IterableTransport(["[]"]))
        await materializer.wait()

    async def test_aclose_cancels_pending_read(self):
        async def chunks():
            yield "[1,"
            await asyncio.Event().wait()

        materializer = Materializer()
        await materializer.start(_session(), IterableTransport(chunks()))
        await asyncio.sleep(0.01)
        await materializer.aclose()
        assert materializer.task.cancelled()
        assert materializer.root == [1]
        assert not materializer.finished
