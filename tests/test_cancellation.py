import unittest

from bbstats.cancellation import CancelToken
from bbstats.errors import AbortError


class CancelTokenTests(unittest.TestCase):
    def test_cancel_runs_callbacks_once_with_reason(self) -> None:
        token = CancelToken()
        seen = []
        token.add_callback(lambda: seen.append(token.reason))

        token.cancel("client disconnected")
        token.cancel("again")

        self.assertTrue(token.cancelled)
        self.assertEqual(token.reason, "client disconnected")
        self.assertEqual(seen, ["client disconnected"])

    def test_callback_added_after_cancel_runs_immediately(self) -> None:
        token = CancelToken()
        token.cancel()
        seen = []
        token.add_callback(lambda: seen.append(True))
        self.assertEqual(seen, [True])

    def test_removed_callback_does_not_run(self) -> None:
        token = CancelToken()
        seen = []
        cb = lambda: seen.append(True)  # noqa: E731
        token.add_callback(cb)
        token.remove_callback(cb)
        token.remove_callback(cb)

        token.cancel()
        self.assertEqual(seen, [])

    def test_child_follows_parent_but_not_the_reverse(self) -> None:
        parent = CancelToken()
        child = parent.child()

        child.cancel("only me")
        self.assertFalse(parent.cancelled)

        other = parent.child()
        parent.cancel("shutdown")
        self.assertTrue(other.cancelled)
        self.assertEqual(other.reason, "shutdown")

    def test_raise_if_cancelled(self) -> None:
        token = CancelToken()
        token.raise_if_cancelled()

        token.cancel("gone")
        with self.assertRaisesRegex(AbortError, "gone"):
            token.raise_if_cancelled()


if __name__ == "__main__":
    unittest.main()
