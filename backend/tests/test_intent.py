import sys
import unittest
from pathlib import Path

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from modules.intent import (
    GROUNDED_FALLBACK,
    ROUTE_GUARDS,
    Route,
    TurnContext,
    classify_turn,
    detect_signals,
)


class ClassifierRoutingTests(unittest.TestCase):
    def test_loaded_rows_default_to_tools(self):
        decision = classify_turn(TurnContext(text="What's the average view count?", rows_loaded=True))

        self.assertEqual(decision.route, Route.TOOLS)
        self.assertEqual(decision.rule, "dataset_default_tools")
        self.assertTrue(decision.use_tools)

    def test_plot_over_time_with_loaded_rows_uses_tools(self):
        decision = classify_turn(TurnContext(text="plot views over time", rows_loaded=True))

        self.assertEqual(decision.route, Route.TOOLS)
        self.assertTrue(decision.signals.wants_time_plot)

    def test_programming_words_do_not_override_tools_once_rows_are_loaded(self):
        decision = classify_turn(TurnContext(text="calculate the mean of favorite count", rows_loaded=True))

        self.assertFalse(decision.signals.code_wanted)
        self.assertEqual(decision.route, Route.TOOLS)

    def test_python_only_request_goes_to_code_execution(self):
        decision = classify_turn(TurnContext(text="Run a linear regression of likes on views", rows_loaded=True))

        self.assertEqual(decision.route, Route.CODE_EXECUTION)
        self.assertEqual(decision.rule, "python_only")
        self.assertTrue(decision.use_code_execution)

    def test_python_only_request_without_data_still_uses_code_execution(self):
        decision = classify_turn(TurnContext(text="show me a histogram of random numbers"))

        self.assertEqual(decision.route, Route.CODE_EXECUTION)

    def test_code_request_with_freshly_attached_dataset(self):
        decision = classify_turn(TurnContext(text="calculate the correlation between columns", dataset_attached=True))

        self.assertEqual(decision.route, Route.CODE_EXECUTION)
        self.assertEqual(decision.rule, "code_wanted_with_dataset")

    def test_code_request_without_dataset_falls_back_to_grounded(self):
        decision = classify_turn(TurnContext(text="write python code to reverse a string"))

        self.assertEqual(decision.route, Route.GROUNDED)
        self.assertEqual(decision.rule, GROUNDED_FALLBACK)

    def test_fresh_attachment_without_image_intent_is_grounded(self):
        decision = classify_turn(TurnContext(text="what is in this file?", dataset_attached=True))

        self.assertEqual(decision.route, Route.GROUNDED)

    def test_plain_question_without_data_is_grounded(self):
        decision = classify_turn(TurnContext(text="Who won the 2018 World Cup?"))

        self.assertEqual(decision.route, Route.GROUNDED)
        self.assertFalse(decision.use_tools)
        self.assertFalse(decision.use_code_execution)


class ImageIntentTests(unittest.TestCase):
    def test_image_request_forces_tools(self):
        decision = classify_turn(TurnContext(text="generate an image of a cat in a spacesuit"))

        self.assertEqual(decision.route, Route.TOOLS)
        self.assertEqual(decision.rule, "force_tools_for_image")

    def test_attached_image_forces_tools(self):
        decision = classify_turn(TurnContext(text="", has_images=True))

        self.assertEqual(decision.route, Route.TOOLS)

    def test_image_request_beats_python_only_words(self):
        decision = classify_turn(TurnContext(text="create a picture of a histogram", rows_loaded=True))

        self.assertEqual(decision.route, Route.TOOLS)
        self.assertEqual(decision.rule, "force_tools_for_image")

    def test_short_retry_after_image_failure(self):
        ctx = TurnContext(
            text="yes please",
            last_assistant_text="Sorry, the image generation tool hit a glitch.",
        )
        decision = classify_turn(ctx)

        self.assertTrue(decision.signals.retry_after_image_failure)
        self.assertEqual(decision.route, Route.TOOLS)

    def test_retry_words_without_prior_failure_are_not_image_intent(self):
        decision = classify_turn(TurnContext(text="yes please", last_assistant_text="The average is 4.2."))

        self.assertFalse(decision.signals.retry_after_image_failure)
        self.assertEqual(decision.route, Route.GROUNDED)

    def test_long_reply_is_not_a_retry(self):
        signals = detect_signals(TurnContext(
            text="yes " + "and tell me more about the history of the company " * 3,
            last_assistant_text="The image generation failed.",
        ))

        self.assertFalse(signals.retry_after_image_failure)


class RuleTableTests(unittest.TestCase):
    def test_guards_are_ordered_and_named(self):
        names = [guard.name for guard in ROUTE_GUARDS]

        self.assertEqual(
            names,
            ["force_tools_for_image", "python_only", "code_wanted_with_dataset", "dataset_default_tools"],
        )

    def test_empty_rule_table_falls_back_to_grounded(self):
        decision = classify_turn(TurnContext(text="plot views over time", rows_loaded=True), guards=[])

        self.assertEqual(decision.route, Route.GROUNDED)
        self.assertEqual(decision.rule, GROUNDED_FALLBACK)

    def test_every_turn_gets_exactly_one_route(self):
        texts = ["", "hi", "plot views over time", "draw a picture", "regression", "python code"]
        for text in texts:
            for rows_loaded in (False, True):
                for dataset_attached in (False, True):
                    with self.subTest(text=text, rows_loaded=rows_loaded, dataset_attached=dataset_attached):
                        decision = classify_turn(TurnContext(
                            text=text, rows_loaded=rows_loaded, dataset_attached=dataset_attached
                        ))
                        self.assertIn(decision.route, (Route.TOOLS, Route.CODE_EXECUTION, Route.GROUNDED))


if __name__ == "__main__":
    unittest.main()
