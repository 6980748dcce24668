"""Tests for splitting generated text into reply-sized chunks."""

from __future__ import annotations

import pytest

from core.chunker import CHUNK_LIMIT, ReplyChunk, ReplyMetadata, split_point, strip_footer, to_chunks

METADATA = ReplyMetadata(model_name="Anthropic: Claude", input_tokens=12345, output_tokens=678)


def _bodies(chunks):
    return "".join(chunk.body for chunk in chunks)


def test_short_text_is_a_single_final_chunk_with_footer():
    chunks = to_chunks("hello", METADATA)
    assert chunks == [
        ReplyChunk(
            body="hello",
            footer="Anthropic: Claude - 12,345 input tokens - 678 output tokens",
            final=True,
        )
    ]
    assert chunks[0].render() == (
        "hello\n-# Anthropic: Claude - 12,345 input tokens - 678 output tokens"
    )


def test_text_at_the_limit_is_not_split():
    text = "x" * CHUNK_LIMIT
    assert len(to_chunks(text)) == 1


def test_split_lands_on_last_line_break():
    text = "a" * 1700 + "\n" + "b" * 799
    assert len(text) == 2500

    chunks = to_chunks(text, METADATA, limit=1800)

    assert len(chunks) == 2
    assert chunks[0].body == "a" * 1700
    assert chunks[1].body.startswith("\n")
    assert chunks[1].body == "\n" + "b" * 799
    assert _bodies(chunks) == text


def test_hard_split_without_line_break():
    text = "z" * 4000
    chunks = to_chunks(text, limit=1800)
    assert [len(chunk.body) for chunk in chunks] == [1800, 1800, 400]


def test_leading_line_break_still_makes_progress():
    text = "\n" + "y" * 2000
    chunks = to_chunks(text, limit=1800)
    assert [len(chunk.body) for chunk in chunks] == [1800, 201]
    assert _bodies(chunks) == text


def test_footer_only_on_last_chunk():
    text = "\n".join(f"line {index}" for index in range(1000))
    chunks = to_chunks(text, METADATA)
    assert all(not chunk.footer and not chunk.final for chunk in chunks[:-1])
    assert chunks[-1].final and chunks[-1].footer
    assert all(len(chunk.body) <= CHUNK_LIMIT for chunk in chunks)
    assert [chunk.render() for chunk in chunks[:-1]] == [chunk.body for chunk in chunks[:-1]]


@pytest.mark.parametrize(
    "text",
    [
        "",
        "short",
        "\n\n\n",
        "para one\n\n" * 500,
        "no breaks " * 700,
        "mixed\r\nlines\n" * 400 + "tail",
    ],
)
def test_bodies_reconstruct_the_original_text(text):
    assert _bodies(to_chunks(text, METADATA, limit=100)) == text


def test_split_point():
    assert split_point("ab\ncd\nef", 6) == 5
    assert split_point("abcdef", 4) == 4
    assert split_point("\nabc", 3) == 3


def test_footer_omits_missing_fields():
    assert ReplyMetadata().footer() == ""
    assert ReplyMetadata(model_name="M", input_tokens=0, output_tokens=5).footer() == "M - 5 output tokens"
    assert to_chunks("x")[0].render() == "x"


def test_limit_must_be_positive():
    with pytest.raises(ValueError):
        to_chunks("abc", limit=0)


def test_strip_footer_recovers_the_body_of_a_final_chunk():
    body = "first line\nsecond line"
    rendered = to_chunks(body, METADATA)[0].render()
    assert strip_footer(rendered) == body
    assert strip_footer(ReplyChunk(body="", footer="M", final=True).render()) == ""


def test_strip_footer_leaves_plain_text_alone():
    assert strip_footer("no footer here") == "no footer here"
    assert strip_footer("-# a leading subtext line\nthen more") == "-# a leading subtext line\nthen more"
    assert strip_footer("text\n-# subtext\nthen more") == "text\n-# subtext\nthen more"
