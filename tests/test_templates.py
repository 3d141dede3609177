from concierge.services.templates import ResponseTemplates, choose_template, stable_index


TABLE = {
    "greeting": {
        "opening": {
            "en": ["Hello! How can I help?", "Hi there! What would you like to know?"],
            "is": "Hæ! Hvernig get ég aðstoðað?",
        }
    },
    "late": {"en": ["You will be {minutes} minutes late."]},
}


class TestChooseTemplate:
    def test_skips_recently_used(self):
        pool = ["Hello! How can I help?", "Hi there! What would you like to know?"]
        assert choose_template(pool, recent=["Hello! How can I help?"]) == pool[1]

    def test_placeholder_prefix_counts_as_used(self):
        pool = ["You will be {minutes} minutes late.", "No worries about the delay."]
        assert choose_template(pool, recent=["You will be 45 minutes late."]) == pool[1]

    def test_all_used_falls_back_to_stable_pick(self):
        pool = ["a", "b", "c"]
        picked = choose_template(pool, recent=pool, seed="session-1")
        assert picked == pool[stable_index("session-1", 3)]
        assert picked == choose_template(pool, recent=pool, seed="session-1")

    def test_empty_pool(self):
        assert choose_template([]) == ""
        assert stable_index("x", 0) == 0


class TestResponseTemplates:
    def test_pool_and_language_fallback(self):
        templates = ResponseTemplates(TABLE)
        assert templates.pool("greeting", "opening", language="is") == ["Hæ! Hvernig get ég aðstoðað?"]
        assert templates.pool("late", language="is") == ["You will be {minutes} minutes late."]
        assert templates.text("missing", "path", language="en") == ""

    def test_choose_formats_values(self):
        templates = ResponseTemplates(TABLE)
        assert templates.choose("late", language="en", minutes=45) == "You will be 45 minutes late."

    def test_bundled_table_has_both_languages(self):
        templates = ResponseTemplates()
        assert templates.has("greeting", "opening")
        assert templates.text("errors", "empty_message", language="en")
        assert templates.text("errors", "empty_message", language="is")
