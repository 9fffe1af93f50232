"""Tests for storage naming conventions."""

import pytest

from spine_orm.model.naming import pluralize, to_db_name


class TestToDbName:
    @pytest.mark.parametrize(
        "name, expected",
        [
            ("CreditCard", "credit_card"),
            ("UserID", "user_id"),
            ("HTTPServerID", "http_server_id"),
            ("UserLanguage", "user_language"),
            ("Name", "name"),
            ("already_snake", "already_snake"),
            ("", ""),
        ],
    )
    def test_conversion(self, name, expected):
        assert to_db_name(name) == expected

    def test_repeated_calls_agree(self):
        assert to_db_name("CompanyID") == to_db_name("CompanyID") == "company_id"


class TestPluralize:
    @pytest.mark.parametrize(
        "word, expected",
        [
            ("user", "users"),
            ("company", "companies"),
            ("person", "people"),
            ("child", "children"),
            ("status", "statuses"),
            ("box", "boxes"),
            ("knife", "knives"),
            ("mouse", "mice"),
            ("matrix", "matrices"),
            ("quiz", "quizzes"),
            ("toy", "toys"),
        ],
    )
    def test_rules(self, word, expected):
        assert pluralize(word) == expected

    def test_uncountable_unchanged(self):
        assert pluralize("sheep") == "sheep"
        assert pluralize("information") == "information"

    def test_already_plural_irregular_unchanged(self):
        assert pluralize("people") == "people"

    def test_only_last_segment_changes(self):
        assert pluralize("user_language") == "user_languages"
        assert pluralize("credit_card") == "credit_cards"

    def test_empty(self):
        assert pluralize("") == ""
