"""Tests for mail_harvester.structure."""

from __future__ import annotations

import pytest

from mail_harvester.structure import (
    LeafPart,
    MalformedResponse,
    MultiPart,
    build_tree,
    has_candidate_attachment,
    parse_fetch_response,
    parse_values,
)

_PLAIN = b'("text" "plain" ("charset" "utf-8") NIL NIL "7bit" 12 1 NIL NIL NIL NIL)'
_PDF = (
    b'("application" "pdf" ("name" "a.pdf") NIL NIL "base64" 2048 NIL '
    b'("attachment" ("filename" "a.pdf")) NIL NIL)'
)
_IMAGE_ATTACHMENT = (
    b'("image" "png" NIL NIL NIL "base64" 512 NIL ("attachment" ("filename" "p.png")) NIL NIL)'
)
_INLINE_IMAGE = b'("image" "png" NIL "<cid>" NIL "base64" 512 NIL ("inline" NIL) NIL NIL)'
_ENVELOPE = b'("Mon, 02 Jun 2025 12:00:00 +0000" "Fwd: CV" NIL NIL NIL NIL NIL NIL NIL "<fwd@example.com>")'


def _forwarded(body: bytes) -> bytes:
    return (
        b'("message" "rfc822" NIL NIL NIL "7bit" 4096 '
        + _ENVELOPE
        + b" "
        + body
        + b' 40 NIL ("inline" NIL) NIL NIL)'
    )


def _tree(raw: bytes):
    return build_tree(parse_values([raw])[0])


class TestParseValues:
    def test_nested_lists_and_nil(self):
        assert parse_values([b'(A ("b" NIL) 12)']) == [["A", ["b", None], "12"]]

    def test_quoted_escapes(self):
        assert parse_values([b'("say \\"hi\\"")']) == [['say "hi"']]

    def test_literal_tuple(self):
        data = [(b"(X {5}", b"hello"), b" Y)"]
        assert parse_values(data) == [["X", b"hello", "Y"]]

    def test_unbalanced(self):
        with pytest.raises(MalformedResponse):
            parse_values([b"(A (B)"])
        with pytest.raises(MalformedResponse):
            parse_values([b"A)"])


class TestParseFetchResponse:
    def test_uid_and_bodystructure(self):
        data = [b"1 (UID 42 BODYSTRUCTURE " + _PLAIN + b")"]
        items = parse_fetch_response(data)
        assert len(items) == 1
        assert items[0]["UID"] == "42"
        assert items[0]["BODYSTRUCTURE"][0] == "text"

    def test_body_literal(self):
        data = [(b"3 (UID 7 BODY[] {11}", b"raw message"), b")"]
        items = parse_fetch_response(data)
        assert items == [{"UID": "7", "BODY[]": b"raw message"}]

    def test_multiple_messages(self):
        data = [
            (b"1 (UID 1 BODY[] {1}", b"a"),
            b")",
            (b"2 (UID 2 BODY[] {1}", b"b"),
            b")",
        ]
        items = parse_fetch_response(data)
        assert [i["UID"] for i in items] == ["1", "2"]

    def test_none_entries_skipped(self):
        assert parse_fetch_response([None]) == []

    def test_odd_attribute_list(self):
        with pytest.raises(MalformedResponse):
            parse_fetch_response([b"1 (UID)"])


class TestBuildTree:
    def test_leaf(self):
        part = _tree(_PLAIN)
        assert part == LeafPart("text", "plain", {"charset": "utf-8"}, None, None)

    def test_leaf_with_disposition(self):
        part = _tree(_PDF)
        assert isinstance(part, LeafPart)
        assert part.disposition == "attachment"
        assert part.filename == "a.pdf"

    def test_multipart(self):
        part = _tree(b"(" + _PLAIN + _PDF + b' "mixed" ("boundary" "x") NIL NIL)')
        assert isinstance(part, MultiPart)
        assert part.subtype == "mixed"
        assert len(part.children) == 2

    def test_forwarded_message_keeps_embedded_body(self):
        part = _tree(_forwarded(b"(" + _PLAIN + _PDF + b' "mixed")'))
        assert isinstance(part, LeafPart)
        assert (part.maintype, part.subtype, part.disposition) == ("message", "rfc822", "inline")
        assert isinstance(part.embedded, MultiPart)
        assert [child.subtype for child in part.embedded.children] == ["plain", "pdf"]

    def test_truncated_leaf(self):
        with pytest.raises(MalformedResponse):
            build_tree(["text", "plain"])

    def test_empty(self):
        with pytest.raises(MalformedResponse):
            build_tree([])


class TestHasCandidateAttachment:
    def test_plain_text_only(self):
        assert has_candidate_attachment(_tree(_PLAIN)) is False

    def test_nested_application_part(self):
        inner = b"(" + _PLAIN + _PDF + b' "mixed")'
        outer = b"(" + inner + _PLAIN + b' "alternative")'
        assert has_candidate_attachment(_tree(outer)) is True

    def test_attachment_disposition_of_any_type(self):
        tree = _tree(b"(" + _PLAIN + _IMAGE_ATTACHMENT + b' "mixed")')
        assert has_candidate_attachment(tree) is True

    def test_inline_image_is_not_candidate(self):
        tree = _tree(b"(" + _PLAIN + _INLINE_IMAGE + b' "related")')
        assert has_candidate_attachment(tree) is False

    def test_pdf_inside_forwarded_message(self):
        tree = _tree(b"(" + _PLAIN + _forwarded(b"(" + _PLAIN + _PDF + b' "mixed")') + b' "mixed")')
        assert has_candidate_attachment(tree) is True

    def test_forwarded_plain_message_is_not_candidate(self):
        tree = _tree(b"(" + _PLAIN + _forwarded(_PLAIN) + b' "mixed")')
        assert has_candidate_attachment(tree) is False

    def test_empty_multipart(self):
        assert has_candidate_attachment(MultiPart("mixed", ())) is False
