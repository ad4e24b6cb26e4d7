"""Tests for tolerant JSON parsing and response-shape resolution."""

from __future__ import annotations

from conftest import make_row, ranking

from app.analysis.json_parser import extract_json_object, parse_model_json, repair_json
from app.analysis.response_shapes import (
    CategoriesAnswer,
    ChoiceAnswer,
    FreeTextAnswer,
    NoAnswer,
    RankingAnswer,
    ResponseRecord,
    body_sources,
    resolve_answer,
    resolve_text,
)


# ==========================================================================
# Test: JSON parser
# ==========================================================================


class TestParseModelJson:
    def test_plain_json(self):
        assert parse_model_json('{"a": 1}') == {"a": 1}

    def test_top_level_list(self):
        assert parse_model_json("[1, 2]") == [1, 2]

    def test_markdown_fence(self):
        assert parse_model_json('```json\n{"a": 1}\n```') == {"a": 1}

    def test_missing_comma_between_members(self):
        text = '{\n  "a": "x"\n  "b": "y"\n}'
        assert parse_model_json(text) == {"a": "x", "b": "y"}

    def test_trailing_commas(self):
        assert parse_model_json('{"a": [1, 2,],}') == {"a": [1, 2]}

    def test_prose_around_object(self):
        text = 'Here is the answer: {"a": {"b": "}"}} hope that helps'
        assert parse_model_json(text) == {"a": {"b": "}"}}

    def test_control_characters_blanked(self):
        assert parse_model_json('{"a": "line\x01break"}') == {"a": "line break"}

    def test_raw_newline_in_string(self):
        assert parse_model_json('{"a": "x\ny"}') == {"a": "x\ny"}

    def test_invalid_escape(self):
        assert parse_model_json(r'{"path": "C:\data"}') == {"path": "C:\\data"}

    def test_unrecoverable_returns_none(self):
        assert parse_model_json("no json here") is None
        assert parse_model_json('{"a": ') is None

    def test_empty_returns_none(self):
        assert parse_model_json(None) is None
        assert parse_model_json("   ") is None

    def test_extract_json_object_respects_strings(self):
        assert extract_json_object('x {"k": "{not a brace}"} y') == '{"k": "{not a brace}"}'
        assert extract_json_object("no braces") is None

    def test_repair_json_only_touches_gaps(self):
        assert repair_json('{"a": 1}') == '{"a": 1}'


# ==========================================================================
# Test: Response shapes
# ==========================================================================


class TestResolveAnswer:
    def test_ranking(self):
        answer = resolve_answer(ranking("Nike", "Adidas"))
        assert isinstance(answer, RankingAnswer)
        assert [(e.name, e.rank) for e in answer.entities] == [("Nike", 1), ("Adidas", 2)]

    def test_ranking_bad_rank_uses_position(self):
        answer = resolve_answer(
            {"entities_ranking": [{"rank": "first", "name": "A"}, {"rank": 0, "name": "B"}, {"name": ""}]}
        )
        assert [(e.name, e.rank) for e in answer.entities] == [("A", 1), ("B", 2)]

    def test_empty_ranking_is_still_ranking(self):
        answer = resolve_answer({"entities_ranking": []})
        assert isinstance(answer, RankingAnswer)
        assert answer.entities == ()

    def test_choice_with_pros_and_cons(self):
        answer = resolve_answer(
            {
                "entity_choice": " Nike ",
                "raw_response": "Nike wins on comfort.",
                "entity_analysis": {
                    "Nike": {
                        "pros": [{"point": "Comfort", "sources": [{"url": "https://a.com/x", "title": "A"}]}],
                        "cons": ["Price"],
                    },
                    "Adidas": "not a dict",
                },
            }
        )
        assert isinstance(answer, ChoiceAnswer)
        assert answer.choice == "Nike"
        assert answer.explanation == "Nike wins on comfort."
        assert list(answer.analysis) == ["Nike"]
        assert answer.analysis["Nike"].pros[0].text == "Comfort"
        assert answer.analysis["Nike"].pros[0].sources[0]["url"] == "https://a.com/x"
        assert answer.analysis["Nike"].cons[0].text == "Price"
        assert [s["url"] for s in answer.sources] == ["https://a.com/x"]

    def test_categories(self):
        answer = resolve_answer(
            {
                "categories": [
                    {"rank": 1, "name": "Running shoes", "top_competitors": [{"rank": 1, "name": "Adidas"}]},
                    {"name": "Apparel"},
                ]
            }
        )
        assert isinstance(answer, CategoriesAnswer)
        assert [(c.name, c.rank) for c in answer.categories] == [("Running shoes", 1), ("Apparel", 2)]
        assert answer.categories[0].top_competitors[0].name == "Adidas"

    def test_free_text(self):
        answer = resolve_answer({"raw_response": "Nike is a solid choice."})
        assert isinstance(answer, FreeTextAnswer)
        assert answer.text == "Nike is a solid choice."

    def test_no_answer_variants(self):
        assert isinstance(resolve_answer(None), NoAnswer)
        assert isinstance(resolve_answer([1, 2]), NoAnswer)
        assert resolve_answer({"unexpected": True}).reason == "unrecognised shape"

    def test_resolve_text(self):
        data, answer = resolve_text('```json\n{"raw_response": "ok"}\n```')
        assert data == {"raw_response": "ok"}
        assert isinstance(answer, FreeTextAnswer)


class TestBodySources:
    def test_news_sources_hinted_as_journalism(self):
        sources = body_sources(
            {
                "sources_cited_news": [{"url": "https://news.com/a", "title": "News"}, {"title": "no url"}],
                "sources_cited_other": [{"url": "https://blog.com/b"}],
            }
        )
        assert [s["url"] for s in sources] == ["https://news.com/a", "https://blog.com/b"]
        assert sources[0]["source_type_hint"] == "Journalism"
        assert "source_type_hint" not in sources[1]

    def test_non_dict_body(self):
        assert body_sources(None) == []
        assert body_sources(["x"]) == []


class TestResponseRecord:
    def test_from_row_merges_grounded_and_body_sources(self):
        body = {**ranking("Nike"), "sources_cited": [{"url": "https://a.com"}, {"url": "https://b.com"}]}
        row = make_row(
            "VIS_Q1",
            "visibility",
            sequence=4,
            gemini=body,
            gemini_sources=[{"url": "https://a.com", "title": "A", "domain": "a.com"}],
            openai_error="timeout",
        )
        record = ResponseRecord.from_row(row)

        assert record.kind == "visibility"
        assert record.sequence == 4
        assert [c["url"] for c in record.answers["gemini"].citations] == ["https://a.com", "https://b.com"]
        assert record.answers["gemini"].citations[0]["title"] == "A"
        assert record.answers["openai"].error == "timeout"
        assert [a.provider for a in record.answered()] == ["gemini"]
