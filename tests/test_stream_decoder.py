import asyncio
import json

from stream_decoder import StreamDecoder, extract_delta, is_incomplete_json, iter_deltas


def _decode(chunks):
    decoder = StreamDecoder()
    deltas = []
    for chunk in chunks:
        deltas.extend(decoder.feed(chunk))
    deltas.extend(decoder.close())
    return deltas, decoder


def _split_every(data: bytes, size: int):
    return [data[i:i + size] for i in range(0, len(data), size)]


STREAM = (
    'data: {"choices":[{"delta":{"content":"Hé"}}]}\n\n'
    'data: {"choices":[{"delta":{"content":"llo, "}}]}\n\n'
    ': keep-alive\n\n'
    'data: {"content":"wörld 🌍"}\n\n'
    'data: [DONE]\n\n'
).encode("utf-8")


def test_decodes_openai_style_frames():
    deltas, decoder = _decode([STREAM])

    assert "".join(deltas) == "Héllo, wörld 🌍"
    assert decoder.done
    assert decoder.framed


def test_chunk_boundaries_do_not_change_output():
    expected, _ = _decode([STREAM])

    for size in (1, 2, 3, 5, 7, 13, 64):
        deltas, _ = _decode(_split_every(STREAM, size))
        assert "".join(deltas) == "".join(expected), f"chunk size {size}"


def test_split_multibyte_character_is_reassembled():
    data = 'data: {"content":"🌍"}\n\n'.encode("utf-8")
    cut = data.index("🌍".encode("utf-8")) + 2

    deltas, _ = _decode([data[:cut], data[cut:]])

    assert deltas == ["🌍"]


def test_malformed_frame_is_skipped_and_decoding_continues():
    data = (
        'data: {"content":"a"}\n\n'
        'data: {"content": oops}\n\n'
        'data: {"content":"b"}\n\n'
    )

    deltas, decoder = _decode([data])

    assert deltas == ["a", "b"]
    assert decoder.skipped == 1


def test_json_split_across_data_lines_is_buffered():
    frame = json.dumps({"content": "joined"})
    data = f"data: {frame[:8]}\ndata: {frame[8:]}\n\n"

    deltas, _ = _decode([data])

    assert deltas == ["joined"]


def test_fresh_complete_frame_supersedes_stale_fragment():
    data = 'data: {"content":"nev\n\ndata: {"content":"next"}\n\n'

    deltas, decoder = _decode([data])

    assert deltas == ["next"]
    assert decoder.skipped == 1


def test_plain_text_and_quoted_payloads():
    data = 'data: Hi\n\ndata:  there\n\ndata: "!"\n\n'

    deltas, _ = _decode([data])

    assert "".join(deltas) == "Hi there!"


def test_nothing_after_done_is_emitted():
    data = 'data: {"content":"x"}\n\ndata: [DONE]\n\ndata: {"content":"late"}\n\n'

    deltas, decoder = _decode([data])

    assert deltas == ["x"]
    assert decoder.feed(b'data: {"content":"later"}\n\n') == []


def test_unframed_stream_is_passed_through_as_text():
    deltas, decoder = _decode([b"Hello ", b"raw ", b"world"])

    assert "".join(deltas) == "Hello raw world"
    assert decoder.framed is False


def test_whitespace_only_text_frame_is_kept():
    deltas, _ = _decode([b"data: Hello\n\ndata:  \n\ndata: world\n\ndata: [DONE]\n\n"])

    assert deltas == ["Hello", " ", "world"]


def test_raw_reply_opening_with_a_colon_is_not_mistaken_for_a_comment():
    for chunks in ([b":) glad to help\nsecond line"], [b":", b") glad to help\n", b"second line"]):
        deltas, decoder = _decode(chunks)

        assert "".join(deltas) == ":) glad to help\nsecond line"
        assert decoder.framed is False


def test_single_line_raw_reply_opening_like_a_field_is_kept_at_close():
    deltas, decoder = _decode([b"id: 42 is the answer"])

    assert deltas == ["id: 42 is the answer"]
    assert decoder.framed is False


def test_leading_comment_then_data_is_framed():
    deltas, decoder = _decode([b": keep-alive\n\n", b"event: message\n", b'data: {"content":"ok"}\n\n'])

    assert deltas == ["ok"]
    assert decoder.framed


def test_framing_waits_for_enough_bytes_to_decide():
    deltas, decoder = _decode([b"da", b'ta: {"content":"ok"}\n\n'])

    assert deltas == ["ok"]
    assert decoder.framed


def test_truncated_frame_at_close_is_dropped():
    deltas, decoder = _decode(['data: {"content":"a"}\n\ndata: {"content":"b'])

    assert deltas == ["a"]
    assert decoder.skipped == 1


def test_error_frames_carry_no_text():
    deltas, _ = _decode(['data: {"error":"rate limited"}\n\ndata: {"content":"ok"}\n\n'])

    assert deltas == ["ok"]


def test_extract_delta_shapes():
    assert extract_delta({"choices": [{"delta": {"content": "a"}}]}) == "a"
    assert extract_delta({"choices": [{"message": {"content": "b"}}]}) == "b"
    assert extract_delta({"choices": [{"text": "c"}]}) == "c"
    assert extract_delta({"type": "content_block_delta", "delta": {"text": "d"}}) == "d"
    assert extract_delta({"response": "e"}) == "e"
    assert extract_delta({"choices": [{"delta": {}}]}) is None
    assert extract_delta([1, 2]) is None


def test_is_incomplete_json():
    assert is_incomplete_json('{"a": [1, 2')
    assert is_incomplete_json('{"a": "unterminated')
    assert not is_incomplete_json('{"a": 1}')
    assert not is_incomplete_json('{"a": 1}}')
    assert not is_incomplete_json("plain")


class _ClosingSource:
    def __init__(self, chunks):
        self._chunks = list(chunks)
        self.closed = False
        self.pulled = 0

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._chunks:
            raise StopAsyncIteration
        self.pulled += 1
        return self._chunks.pop(0)

    async def aclose(self):
        self.closed = True


def test_iter_deltas_stops_at_done_and_closes_source():
    source = _ClosingSource([
        b'data: {"content":"one"}\n\n',
        b"data: [DONE]\n\n",
        b'data: {"content":"never read"}\n\n',
    ])

    async def run():
        return [delta async for delta in iter_deltas(source)]

    assert asyncio.run(run()) == ["one"]
    assert source.closed
    assert source.pulled == 2
