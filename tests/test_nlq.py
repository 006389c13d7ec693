import pytest

from hybridgrep.errors import QueryValidationError, ValidationReason
from hybridgrep.models import ParsedQuery, QueryComplexity, QueryIntent
from hybridgrep.nlq import (IntentClassifier, IntentRule, QueryParser,
                            default_intent_rules, tokenize)


@pytest.fixture
def parser():
    return QueryParser(max_length=100)


@pytest.fixture
def classifier():
    return IntentClassifier()


def test_parse_normalizes_and_tokenizes(parser):
    parsed = parser.parse("  Find the  Parse_HTTP  function!! \x07 ")
    assert parsed.original == "Find the  Parse_HTTP  function!! \x07".strip()
    assert parsed.normalized == "find the  parse_http  function!! "
    assert parsed.tokens == ("find", "the", "parse_http", "function")
    assert parsed.language == "en"
    assert parsed.complexity == QueryComplexity.SIMPLE


def test_parse_composes_unicode(parser):
    decomposed = "cafe\u0301 config"
    parsed = parser.parse(decomposed)
    assert parsed.tokens[0] == "café"
    assert parsed.language == "es"


def test_tokenize_trims_edges_and_splits_cjk():
    assert tokenize("__init__ --flag") == ["init", "flag"]
    assert tokenize("搜索函数 search") == ["搜", "索", "函", "数", "search"]


def test_language_detection(parser):
    assert parser.parse("如何 搜索 代码").language == "zh"
    assert parser.parse("código de búsqueda").language == "es"
    assert parser.parse("plain english").language == "en"


@pytest.mark.parametrize(
    "text,expected",
    [
        ("one two three four", QueryComplexity.SIMPLE),
        ("one two three four five", QueryComplexity.MODERATE),
        ("where is the config loader defined", QueryComplexity.MODERATE),
        ("where is the config loader defined?", QueryComplexity.COMPLEX),
        ("how is the config loader built", QueryComplexity.COMPLEX),
        ("cache, index and the loader code", QueryComplexity.COMPLEX),
        (" ".join(["word"] * 12), QueryComplexity.COMPLEX),
        (" ".join(["word"] * 20), QueryComplexity.COMPLEX),
        (" ".join(["word"] * 21), QueryComplexity.VERY_COMPLEX),
    ],
)
def test_complexity(text, expected):
    assert QueryParser().parse(text).complexity == expected


def test_length_validation(parser):
    assert parser.parse("x" * 100).tokens == ("x" * 100,)
    with pytest.raises(QueryValidationError) as excinfo:
        parser.parse("x" * 101)
    assert excinfo.value.reason is ValidationReason.TOO_LONG
    assert excinfo.value.category == "validation"


@pytest.mark.parametrize("text", ["", "   ", "\n\t"])
def test_empty_query_rejected(parser, text):
    with pytest.raises(QueryValidationError) as excinfo:
        parser.parse(text)
    assert excinfo.value.reason is ValidationReason.EMPTY


def test_validate_rejects_zero_tokens(parser):
    parsed = parser.parse("?!... ---")
    assert parsed.tokens == ()
    with pytest.raises(QueryValidationError) as excinfo:
        parser.validate(parsed)
    assert excinfo.value.reason is ValidationReason.INVALID_CHARACTERS


def test_validate_rechecks_length(parser):
    handmade = ParsedQuery(
        original="y" * 150,
        normalized="y" * 150,
        tokens=("y" * 150,),
        language="en",
        complexity=QueryComplexity.SIMPLE,
    )
    with pytest.raises(QueryValidationError) as excinfo:
        parser.validate(handmade)
    assert excinfo.value.reason is ValidationReason.TOO_LONG


def test_documentation_short_circuit(parser, classifier):
    parsed = parser.parse("Show me the API documentation for the search endpoint")
    assert classifier.classify(parsed) is QueryIntent.DOCUMENTATION_SEARCH
    assert classifier.classify(parser.parse("bug in the docs")) is QueryIntent.DOCUMENTATION_SEARCH


def test_unmatched_query_is_general(parser, classifier):
    result = classifier.classify_with_confidence(parser.parse("pizza recipes"))
    assert result.intent is QueryIntent.GENERAL_SEARCH
    assert result.confidence == 0.55
    assert result.match_count == 0


@pytest.mark.parametrize(
    "text,intent",
    [
        ("find the function that parses config", QueryIntent.CODE_SEARCH),
        ("http endpoint for login", QueryIntent.API_SEARCH),
        ("crash when saving file", QueryIntent.BUG_REPORT_SEARCH),
        ("setup guide", QueryIntent.DOCUMENTATION_SEARCH),
    ],
)
def test_keyword_rules(parser, classifier, text, intent):
    assert classifier.classify(parser.parse(text)) is intent


def test_confidence_outranks_match_count(parser, classifier):
    # Three code keywords vs a single higher-confidence bug keyword.
    parsed = parser.parse("function class method error")
    result = classifier.classify_with_confidence(parsed)
    assert result.intent is QueryIntent.BUG_REPORT_SEARCH
    assert result.confidence == 0.9


def test_substring_and_token_matches_both_count(parser):
    rules = [IntentRule(QueryIntent.API_SEARCH, ("api",), 0.5)]
    classifier = IntentClassifier(rules)
    exact = classifier.classify_with_confidence(parser.parse("api"))
    partial = classifier.classify_with_confidence(parser.parse("rapid"))
    assert exact.match_count == 2
    assert partial.match_count == 1


def test_custom_rules_replace_defaults(parser):
    classifier = IntentClassifier(
        [IntentRule(QueryIntent.CODE_SEARCH, ("pizza",), 0.6)], default_confidence=0.3
    )
    assert classifier.classify(parser.parse("pizza recipes")) is QueryIntent.CODE_SEARCH
    fallback = classifier.classify_with_confidence(parser.parse("setup guide"))
    assert fallback.intent is QueryIntent.GENERAL_SEARCH
    assert fallback.confidence == 0.3
    assert len(default_intent_rules()) == 4
