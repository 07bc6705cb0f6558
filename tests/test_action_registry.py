import unittest

from actiondesk import domain
from actiondesk.providers.registry import build_default_registry


class ActionRegistryTests(unittest.TestCase):
    def setUp(self):
        self.registry = build_default_registry()

    def test_direct_actions(self):
        self.assertTrue(self.registry.is_direct(domain.MARK_READ))
        self.assertTrue(self.registry.is_direct(domain.DELETE))
        self.assertFalse(self.registry.is_direct(domain.REPLY))
        self.assertFalse(self.registry.is_direct("unknown_action"))

    def test_validate_args_rejects_blank_required_field(self):
        definition = self.registry.get_definition(domain.REPLY)

        with self.assertRaisesRegex(ValueError, "missing required field 'body'"):
            definition.validate_args({"body": "   "})

    def test_validate_args_strips_strings_and_drops_unknown_fields(self):
        definition = self.registry.get_definition(domain.FORWARD)

        clean = definition.validate_args({"to": " a@example.com ", "cc": "x"})

        self.assertEqual(clean, {"to": "a@example.com"})

    def test_validate_args_checks_array_type(self):
        definition = self.registry.get_definition(domain.CREATE_MEETING)

        with self.assertRaisesRegex(ValueError, "must be an array"):
            definition.validate_args(
                {"start": "2026-10-15T09:00:00+00:00", "end": "x", "attendees": "a@b.c"}
            )

    def test_get_definition_unknown_raises(self):
        with self.assertRaises(ValueError):
            self.registry.get_definition("teleport")

    def test_label_for_unknown_action_is_humanized(self):
        self.assertEqual(self.registry.label_for("archive_all"), "archive all")
        self.assertEqual(self.registry.label_for(domain.CREATE_TASK), "Create task")

    def test_render_for_prompt_marks_required_fields(self):
        rendered = self.registry.render_for_prompt()

        self.assertTrue(rendered.startswith("ACTION TYPES"))
        self.assertIn("- create_task: Add a task to the default Google Tasks list.", rendered)
        self.assertIn("  - title (string, required): Task title.", rendered)
        self.assertIn("  - notes (string): Optional task notes.", rendered)


if __name__ == "__main__":
    unittest.main()
