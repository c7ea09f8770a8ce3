import pytest

from college_app.errors import StructuralImportError
from college_app.imports.parsing import decode_upload, parse_csv, parse_lines, split_line


def test_quoted_delimiter_kept_in_one_field():
    assert parse_csv('"Doe, John",x') == [["Doe, John", "x"]]


def test_fields_are_trimmed_and_blank_lines_dropped():
    text = "Name , Email\n\n  \n Ann ,ann@example.com \n"
    assert parse_csv(text) == [["Name", "Email"], ["Ann", "ann@example.com"]]


def test_line_numbers_are_physical():
    rows = parse_lines("h1,h2\n\na,b\nc,d\n")
    assert [r.line_no for r in rows] == [1, 3, 4]


def test_parse_is_idempotent():
    text = 'Name,Subjects\nBob,"Math, Physics"\n\nAlice,Chemistry\n'
    assert parse_lines(text) == parse_lines(text)


def test_crlf_line_endings():
    assert parse_csv("a,b\r\nc,d\r\n") == [["a", "b"], ["c", "d"]]


def test_empty_trailing_fields_are_kept():
    assert parse_csv("a,,") == [["a", "", ""]]


def test_unterminated_quote_is_flagged_for_that_line():
    fields, unterminated = split_line('Ann,"Computer Science')
    assert unterminated
    assert fields == ["Ann", "Computer Science"]

    rows = parse_lines('h\nAnn,"oops\nBob,ok\n')
    assert rows[1].error == "Unterminated quoted field"
    assert rows[2].error is None


def test_decode_strips_bom():
    assert decode_upload("\ufeffName,Email\n".encode("utf-8")) == "Name,Email\n"


def test_decode_rejects_empty_upload():
    with pytest.raises(StructuralImportError):
        decode_upload(b"  \n\n")


def test_decode_rejects_non_utf8():
    with pytest.raises(StructuralImportError) as exc:
        decode_upload(b"Name\n\xff\xfe\xfa")
    assert "UTF-8" in str(exc.value)


def test_lone_carriage_returns_split_lines():
    rows = parse_lines("Name,Email\rAnn,ann@example.com\r\rBob,bob@example.com")
    assert [r.fields for r in rows] == [["Name", "Email"], ["Ann", "ann@example.com"], ["Bob", "bob@example.com"]]
    assert [r.line_no for r in rows] == [1, 2, 4]
