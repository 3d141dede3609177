from unittest.mock import Mock

import pytest

from concierge.models.session import SeasonalContext, Turn
from concierge.services.fast_path import (
    AcknowledgmentDetector,
    FastPathChain,
    FastPathMatch,
    GreetingDetector,
    normalize_phrase_text,
)


@pytest.fixture
def chain(templates, phrases):
    return FastPathChain.default(templates, phrases)


class TestNormalizePhraseText:
    def test_strips_punctuation_and_case(self):
        assert normalize_phrase_text("Hello!!") == "hello"

    def test_strips_emoji_and_emoticons(self):
        assert normalize_phrase_text("hi 👋 :)") == "hi"

    def test_collapses_repeated_letters_and_spaces(self):
        assert normalize_phrase_text("heyyyy   there") == "hey there"

    def test_keeps_icelandic_letters(self):
        assert normalize_phrase_text("Góðan daginn!") == "góðan daginn"


class TestGreeting:
    def test_hello_variants_share_outcome(self, chain, session):
        plain = chain.run("hello", session, "en")
        excited = chain.run("hello!", session, "en")
        assert plain.category == excited.category == "greeting.opening"
        assert plain.response == excited.response

    def test_greeting_with_question_is_not_a_greeting(self, chain, session):
        assert chain.run("hello, can you tell me your hours", session, "en") is None

    def test_returning_marker(self, chain, session):
        assert chain.run("hello again", session, "en").category == "greeting.returning"

    def test_started_conversation_makes_greeting_returning(self, chain, session):
        session.conversation_started = True
        assert chain.run("hi", session, "en").category == "greeting.returning"

    def test_greeting_marks_conversation_started(self, chain, session):
        match = chain.run("Hæ", session, "is")
        assert match.update.conversation_started is True
        assert match.update.is_first_greeting is False
        assert match.response

    def test_avoids_repeating_recent_reply(self, templates, phrases, session):
        detector = GreetingDetector(templates, phrases)
        first = detector.detect("hello", session, "en")
        session.messages.append(Turn(role="assistant", content=first.response, timestamp=1.0))
        second = detector.detect("hello", session, "en")
        assert second.response != first.response


class TestScenarioPriority:
    def test_urgent_lateness_beats_greeting(self, chain, session):
        match = chain.run("Hi, I'm running late", session, "en")
        assert match.category == "late_arrival.unspecified_delay"
        assert match.update.topic == "late_arrival"
        assert match.update.late_arrival.is_late is True

    def test_moderate_delay_fills_minutes(self, chain, session):
        match = chain.run("We will be 45 minutes late", session, "en")
        assert match.category == "late_arrival.moderate_delay"
        assert match.update.late_arrival.minutes == 45

    def test_sold_out_branch(self, chain, session, templates):
        session.sold_out = True
        match = chain.run("We will be 45 minutes late", session, "en")
        assert match.response in templates.pool("late_arrival", "moderate_delay", "sold_out", language="en")

    def test_booking_change(self, chain, session):
        match = chain.run("Can I change my booking to tomorrow?", session, "en")
        assert match.category == "booking_change.different_day"
        assert match.update.booking_modification.requested is True
        assert match.update.clear_late_arrival is True


class TestSmallTalk:
    def test_wellbeing(self, chain, session):
        match = chain.run("How are you?", session, "en")
        assert match.category == "small_talk.wellbeing"
        assert match.update.topic == "small_talk"

    def test_icelandic_identity(self, chain, session):
        assert chain.run("Hver ertu?", session, "is").category == "small_talk.identity"

    def test_long_message_is_not_small_talk(self, chain, session):
        match = chain.run("how are you able to keep the lagoon so warm during the winter months", session, "en")
        assert match is None


class TestMalformedInput:
    @pytest.mark.parametrize("message", [None, "", "   ", "!!!", "🙂", "@@@ ??? ###"])
    def test_every_detector_reports_no_match(self, chain, session, message):
        for detector in chain.detectors:
            assert detector.detect(message, session, "en") is None


class TestAcknowledgment:
    @pytest.mark.parametrize(
        "message,category",
        [
            ("thanks", "acknowledgment.simple"),
            ("ok thanks", "acknowledgment.simple"),
            ("perfect!", "acknowledgment.positive"),
            ("bye", "acknowledgment.ending"),
            ("I have another question", "acknowledgment.continuity"),
            ("you've been very helpful", "acknowledgment.praise"),
            ("takk fyrir", "acknowledgment.simple"),
        ],
    )
    def test_categories(self, chain, session, message, category):
        assert chain.run(message, session, "en").category == category

    def test_questions_never_match(self, chain, session):
        assert chain.run("thanks, what time do you open?", session, "en") is None

    @pytest.mark.parametrize(
        "message",
        [
            "Great, what time do you close tonight",
            "perfect and how long is the ritual",
            "Frábært, hvenær lokar lónið",
        ],
    )
    def test_question_after_praise_word_never_matches(self, templates, phrases, message):
        detector = AcknowledgmentDetector(templates, phrases)
        assert detector.categorize(message) is None

    def test_simple_is_capped_at_four_tokens(self, phrases, templates):
        detector = AcknowledgmentDetector(templates, phrases)
        assert detector.categorize("ok ok ok ok ok") is None
        assert detector.categorize("ok ok ok ok") == "simple"

    def test_follow_up_uses_last_topic(self, chain, session, templates):
        session.last_topic = "ritual"
        match = chain.run("great", session, "en")
        assert any(option in match.response for option in templates.pool("follow_up", "ritual", language="en"))

    def test_seasonal_follow_up(self, templates, phrases, session):
        detector = AcknowledgmentDetector(templates, phrases)
        session.last_topic = "seasonal"
        session.seasonal = SeasonalContext(season="winter", subtopic="northern_lights")
        assert detector.follow_up_key(session) == "seasonal_winter"


class TestChain:
    def test_failing_detector_is_skipped(self, session):
        broken = Mock()
        broken.name = "broken"
        broken.detect.side_effect = RuntimeError("boom")
        fallback = Mock()
        fallback.name = "fallback"
        fallback.detect.return_value = FastPathMatch(category="fallback", response="matched")

        chain = FastPathChain([broken, fallback])

        assert chain.run("anything", session, "en").response == "matched"

    def test_detectors_do_not_mutate_session(self, chain, session):
        chain.run("We will be 45 minutes late", session, "en")
        assert session.late_arrival is None
        assert session.last_topic is None
