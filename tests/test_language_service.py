import pytest

from concierge.services.language_service import (
    CONFIDENCE_HIGH,
    CONFIDENCE_LOW,
    CONFIDENCE_MEDIUM,
    LanguageClassifier,
    find_longest_signals,
    is_ambiguous_input,
    resolve_session_language,
)


@pytest.fixture
def classifier():
    return LanguageClassifier("en")


class TestStrongSignals:
    def test_icelandic_signal_overrides_english_session(self, classifier):
        decision = classifier.classify("Hæ, hvenær opnar lónið?", prior_language="en")
        assert decision.language == "is"
        assert decision.confidence == CONFIDENCE_HIGH
        assert decision.reason == "strong_signal"

    def test_english_signal_overrides_icelandic_session(self, classifier):
        decision = classifier.classify("hello", prior_language="is")
        assert decision.language == "en"
        assert decision.confidence == CONFIDENCE_HIGH

    def test_icelandic_characters_count_as_evidence(self, classifier):
        decision = classifier.classify("Skjólið", prior_language="en")
        assert decision.language == "is"

    @pytest.mark.parametrize(
        "message",
        ["get directions", "Get directions", "og", "hver", "bless", "sein"],
    )
    def test_words_shared_with_english_keep_english_session(self, classifier, message):
        decision = classifier.classify(message, prior_language="en")
        assert decision.language == "en"
        assert decision.reason == "sticky"

    def test_signal_words_need_word_boundaries(self):
        # "hvar" must not fire inside an unrelated English word.
        assert "is" not in find_longest_signals("hvarf")


class TestStickiness:
    def test_ambiguous_follow_up_keeps_session_language(self, classifier):
        decision = classifier.classify("ok", prior_language="is")
        assert decision.language == "is"
        assert decision.confidence == CONFIDENCE_MEDIUM
        assert decision.reason == "sticky"

    def test_fresh_session_uses_default(self, classifier):
        decision = classifier.classify("ok")
        assert decision.language == "en"
        assert decision.confidence == CONFIDENCE_LOW

    def test_unknown_prior_is_not_sticky(self, classifier):
        decision = classifier.classify("ok", prior_language="unknown")
        assert decision.reason == "default"


class TestAmbiguousInput:
    @pytest.mark.parametrize("message", ["12345678", "+354 527 6800", "SKY-12345", "ab12cd", "🙂", "!!!", ""])
    def test_ambiguous_inputs(self, message):
        assert is_ambiguous_input(message) is True

    def test_booking_number_never_flips_language(self, classifier):
        decision = classifier.classify("12345678", prior_language="is")
        assert decision.language == "is"
        assert decision.reason == "sticky"

    def test_digits_inside_sentence_are_ignored(self, classifier):
        decision = classifier.classify("bókun 12345678", prior_language="en")
        assert decision.language == "is"

    def test_plain_words_are_not_ambiguous(self):
        assert is_ambiguous_input("takk") is False


class TestTieBreak:
    def test_longest_signal_wins(self, classifier):
        decision = classifier.classify("takk, what time do you open", prior_language="is")
        assert decision.language == "en"
        assert decision.reason == "tie_break"
        assert decision.confidence == CONFIDENCE_HIGH

    def test_equal_length_prefers_prior_language(self, classifier):
        decision = classifier.classify("hæ hi", prior_language="is")
        assert decision.language == "is"

    def test_equal_length_without_prior_uses_default(self, classifier):
        decision = classifier.classify("hæ hi")
        assert decision.language == "en"

    def test_tie_break_is_deterministic(self, classifier):
        results = {classifier.classify("takk thanks", prior_language="is").language for _ in range(5)}
        assert len(results) == 1


class TestResolveSessionLanguage:
    def test_unknown_falls_back_to_default(self):
        assert resolve_session_language("unknown", "en") == "en"

    def test_supported_language_is_kept(self):
        assert resolve_session_language("is", "en") == "is"

    def test_unsupported_default_is_rejected(self):
        with pytest.raises(ValueError):
            LanguageClassifier("de")
