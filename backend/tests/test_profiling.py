import sys
import unittest
from pathlib import Path

import pandas as pd

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from modules.profiling import (
    ColumnKind,
    ENGAGEMENT_COLUMN,
    classify_column,
    column_not_found,
    enrich,
    parse_number,
    resolve_column,
    slim_project,
    summarize,
)


class NumberParsingTests(unittest.TestCase):
    def test_permissive_parsing(self):
        self.assertEqual(parse_number("12abc"), 12.0)
        self.assertEqual(parse_number("  3.5 "), 3.5)
        self.assertEqual(parse_number("-2"), -2.0)
        self.assertEqual(parse_number(7), 7.0)
        self.assertIsNone(parse_number("abc"))
        self.assertIsNone(parse_number(""))
        self.assertIsNone(parse_number(None))
        self.assertIsNone(parse_number(True))
        self.assertIsNone(parse_number(float("nan")))


class ColumnResolutionTests(unittest.TestCase):
    headers = ["Favorite Count", "text", "view_count"]

    def test_loose_names_resolve_to_exact_header(self):
        for name in ("Favorite Count", "favorite_count", "FAVORITE COUNT", "favorite-count", "favoritecount"):
            with self.subTest(name=name):
                self.assertEqual(resolve_column(self.headers, name), "Favorite Count")

    def test_unknown_name_does_not_resolve(self):
        self.assertIsNone(resolve_column(self.headers, "likes"))
        self.assertIsNone(resolve_column(self.headers, None))
        self.assertIsNone(resolve_column([], "text"))

    def test_not_found_error_lists_headers_and_suggestions(self):
        result = column_not_found("Favourite Count", self.headers)

        self.assertIn("error", result)
        self.assertIn("Available columns: Favorite Count, text, view_count", result["error"])
        self.assertIn("Did you mean: Favorite Count", result["error"])


class EnrichmentTests(unittest.TestCase):
    def _frame(self):
        df = pd.DataFrame({
            "text": ["a", "b", "c", "d"],
            "favorite_count": ["10", "5", "x", "3"],
            "view_count": ["100", "0", "50", "7"],
        })
        return df, df.columns.tolist()

    def test_engagement_ratio_is_appended(self):
        df, headers = self._frame()
        enriched, new_headers = enrich(df, headers)

        self.assertEqual(new_headers, headers + [ENGAGEMENT_COLUMN])
        values = enriched[ENGAGEMENT_COLUMN].tolist()
        self.assertEqual(values[0], 0.1)
        self.assertIsNone(values[1])  # zero views
        self.assertIsNone(values[2])  # unparseable favorites
        self.assertEqual(values[3], round(3 / 7, 6))

    def test_enrich_is_idempotent(self):
        df, headers = self._frame()
        once_df, once_headers = enrich(df, headers)
        twice_df, twice_headers = enrich(once_df, once_headers)

        self.assertIs(twice_df, once_df)
        self.assertEqual(twice_headers, once_headers)
        self.assertEqual(twice_headers.count(ENGAGEMENT_COLUMN), 1)

    def test_missing_metric_columns_leave_input_unchanged(self):
        df = pd.DataFrame({"text": ["a"], "likes": ["4"]})
        enriched, headers = enrich(df, ["text", "likes"])

        self.assertIs(enriched, df)
        self.assertEqual(headers, ["text", "likes"])

    def test_source_frame_is_not_mutated(self):
        df, headers = self._frame()
        enrich(df, headers)

        self.assertNotIn(ENGAGEMENT_COLUMN, df.columns)


class SummaryTests(unittest.TestCase):
    def test_numeric_and_categorical_lines(self):
        df = pd.DataFrame({"text": ["a", "b", "a"], "score": ["1", "2", "3.5"]})
        summary = summarize(df, ["text", "score"])

        self.assertTrue(summary.startswith("**Dataset: 3 rows × 2 columns**"))
        self.assertIn('  • "score": mean=2.17, min=1, max=3.5, n=3', summary)
        self.assertIn('  • "text": 2 unique values, top: a (2), b (1)', summary)

    def test_eighty_percent_threshold(self):
        self.assertEqual(classify_column(["1", "2", "3", "4", "x"])[0], ColumnKind.NUMERIC)
        self.assertEqual(classify_column(["1", "2", "x", "y"])[0], ColumnKind.CATEGORICAL)
        self.assertEqual(classify_column([])[0], ColumnKind.CATEGORICAL)

    def test_ties_keep_first_seen_order(self):
        df = pd.DataFrame({"lang": ["fr", "en", "fr", "en", "de"]})
        summary = summarize(df, ["lang"])

        self.assertIn("top: fr (2), en (2), de (1)", summary)

    def test_empty_cells_are_ignored(self):
        df = pd.DataFrame({"views": ["10", "", "20"]})
        summary = summarize(df, ["views"])

        self.assertIn('"views": mean=15, min=10, max=20, n=2', summary)

    def test_column_names_appear_verbatim(self):
        df = pd.DataFrame({"View Count": ["1", "2"]})

        self.assertIn('"View Count"', summarize(df, ["View Count"]))

    def test_empty_dataset_has_empty_summary(self):
        self.assertEqual(summarize(pd.DataFrame(), []), "")


class SlimProjectionTests(unittest.TestCase):
    def test_only_allow_listed_columns_in_header_order(self):
        df = pd.DataFrame({
            "id": ["1"],
            "text": ['Hello, "world"'],
            "Favorite Count": ["4"],
            "view_count": ["40"],
            "created_at": ["2024-01-01"],
        })
        slim = slim_project(df, df.columns.tolist())

        lines = slim.split("\n")
        self.assertEqual(lines[0], "text,Favorite Count,view_count,created_at")
        self.assertEqual(lines[1], '"Hello, ""world""",4,40,2024-01-01')

    def test_no_matching_columns(self):
        df = pd.DataFrame({"id": ["1"], "title": ["x"]})

        self.assertEqual(slim_project(df, ["id", "title"]), "")


if __name__ == "__main__":
    unittest.main()
