import pytest

from routine_import_api.errors import ParserError
from routine_import_api.models import Draft
from routine_import_api.parsers import (
    BaseParser,
    _PARSER_REGISTRY,
    build_parser_context,
    get_parser,
    parse_payload,
    register_parser,
)


class _FakeParser(BaseParser):
    @staticmethod
    def source_type() -> str:
        return "fake_source_test"

    def parse(self, content, context):
        return Draft(
            source_type="text",
            parser_version=context.parser_version,
            ruleset_version=context.ruleset_version,
            extractor_version=context.extractor_version,
        )


@pytest.fixture(autouse=True)
def clean_registry():
    """Remove test parsers from registry after each test."""
    yield
    _PARSER_REGISTRY.pop("fake_source_test", None)


def test_builtin_parsers_are_registered():
    for source_type in ("text", "csv", "xlsx", "docx", "pdf"):
        assert get_parser(source_type).source_type() == source_type


def test_register_and_get_parser():
    register_parser(_FakeParser)
    parser = get_parser("fake_source_test")
    assert isinstance(parser, _FakeParser)


def test_get_unregistered_raises():
    with pytest.raises(KeyError):
        get_parser("nonexistent_source_xyz")


def test_duplicate_registration_raises():
    register_parser(_FakeParser)
    with pytest.raises(ValueError, match="already registered"):
        register_parser(_FakeParser)


def test_parse_payload_dispatches_to_parser():
    register_parser(_FakeParser)
    draft = parse_payload("fake_source_test", b"anything")
    assert draft.days == []
    assert draft.parser_version == build_parser_context("fake_source_test").parser_version


def test_parse_payload_unknown_source():
    with pytest.raises(ParserError, match="Unsupported source type"):
        parse_payload("nonexistent_source_xyz", b"")


def test_parse_payload_text():
    draft = parse_payload("text", "Lunes\nSentadilla 4x8\n".encode("utf-8"))
    assert draft.source_type == "text"
    assert draft.coverage.exercises_parsed == 1


def test_parse_payload_latin1_text():
    draft = parse_payload("text", "Miércoles\nPress banca 3x10".encode("latin-1"))
    assert draft.days[0].mapped_day_key == "wednesday"
