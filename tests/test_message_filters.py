import unittest

from actiondesk.services.message_filters import is_important, select_important


class ImportantMessageFilterTests(unittest.TestCase):
    def test_keyword_in_subject_or_snippet(self):
        self.assertTrue(is_important({"subject": "URGENT: server down"}))
        self.assertTrue(is_important({"subject": "hi", "snippet": "this is Important"}))
        self.assertFalse(is_important({"subject": "lunch?", "snippet": "tacos"}))

    def test_whitespace_and_case_are_normalized(self):
        self.assertTrue(is_important({"subject": "  \n\tUrGeNt  ", "snippet": None}))

    def test_missing_fields_are_not_important(self):
        self.assertFalse(is_important({}))

    def test_select_returns_only_matches(self):
        items = [
            {"id": "1", "subject": "newsletter"},
            {"id": "2", "subject": "Important: contract"},
            {"id": "3", "snippet": "urgent reply needed"},
        ]

        self.assertEqual([item["id"] for item in select_important(items)], ["2", "3"])

    def test_select_falls_back_to_first_three(self):
        items = [{"id": str(index), "subject": "hello"} for index in range(5)]

        self.assertEqual([item["id"] for item in select_important(items)], ["0", "1", "2"])

    def test_select_skips_non_dict_rows(self):
        self.assertEqual(select_important(["x", None]), [])


if __name__ == "__main__":
    unittest.main()
