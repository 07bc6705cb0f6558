import unittest

from actiondesk.services.events import PermissionUpdates


class PermissionUpdatesTests(unittest.TestCase):
    def test_publish_reaches_every_subscriber(self):
        updates = PermissionUpdates()
        seen = []
        updates.subscribe(lambda principal_id: seen.append(("a", principal_id)))
        updates.subscribe(lambda principal_id: seen.append(("b", principal_id)))

        delivered = updates.publish("user-1")

        self.assertEqual(delivered, 2)
        self.assertEqual(seen, [("a", "user-1"), ("b", "user-1")])

    def test_unsubscribe_stops_delivery(self):
        updates = PermissionUpdates()
        seen = []
        unsubscribe = updates.subscribe(seen.append)

        unsubscribe()
        delivered = updates.publish("user-1")

        self.assertEqual(seen, [])
        self.assertEqual(delivered, 0)

    def test_failing_listener_does_not_block_others(self):
        updates = PermissionUpdates()
        seen = []

        def broken(_principal_id):
            raise RuntimeError("listener failed")

        updates.subscribe(broken)
        updates.subscribe(seen.append)

        with self.assertLogs("actiondesk.services.events", level="ERROR"):
            updates.publish(None)

        self.assertEqual(seen, [None])


if __name__ == "__main__":
    unittest.main()
