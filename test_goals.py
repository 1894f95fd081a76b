import unittest
from unittest.mock import MagicMock, patch

import requests

from goals import GoalRecord, GoalStore, GoalStoreError, fetch_goals, save_goals

GET_URL = "https://goals.example.com/exec?user=abc"
POST_URL = "https://goals.example.com/exec"


def _response(status=200, payload=None, text=""):
    resp = MagicMock()
    resp.status_code = status
    resp.text = text
    if isinstance(payload, Exception):
        resp.json.side_effect = payload
    else:
        resp.json.return_value = payload
    return resp


class TestFetchGoals(unittest.TestCase):
    @patch("goals.requests.get")
    def test_parses_and_coerces(self, mock_get):
        mock_get.return_value = _response(payload={
            "year": 2025,
            "metas": [
                {"comercial": "  juan   garzón linares ", "metaAnual": "1000", "metaOfertas": None, "metaVisitas": 5},
                {"comercial": "KAREN CARRILLO"},
            ],
        })
        records = fetch_goals(2025, url=GET_URL)
        mock_get.assert_called_once_with(GET_URL + "&year=2025", timeout=None)
        self.assertEqual(records[0], GoalRecord("JUAN GARZÓN LINARES", 1000.0, 0.0, 5.0))
        self.assertEqual(records[1], GoalRecord("KAREN CARRILLO", 0.0, 0.0, 0.0))

    @patch("goals.requests.get")
    def test_network_failure_degrades_to_empty(self, mock_get):
        mock_get.side_effect = requests.exceptions.ConnectionError("down")
        self.assertEqual(fetch_goals(2025, url=GET_URL), [])

    @patch("goals.requests.get")
    def test_bad_status_and_bad_json(self, mock_get):
        mock_get.return_value = _response(status=500, text="boom")
        self.assertEqual(fetch_goals(2025, url=GET_URL), [])
        mock_get.return_value = _response(payload=ValueError("not json"))
        self.assertEqual(fetch_goals(2025, url=GET_URL), [])
        mock_get.return_value = _response(payload={"metas": "nope"})
        self.assertEqual(fetch_goals(2025, url=GET_URL), [])

    def test_unconfigured_url(self):
        self.assertEqual(fetch_goals(2025, url=""), [])


class TestSaveGoals(unittest.TestCase):
    RECORDS = [GoalRecord("KAREN CARRILLO", 500, 10, 8)]

    @patch("goals.requests.post")
    def test_payload(self, mock_post):
        mock_post.return_value = _response(payload={"ok": True})
        save_goals(2025, self.RECORDS, url=POST_URL, api_key="KEY", timeout=5)
        body = mock_post.call_args.kwargs["json"]
        self.assertEqual(body["apiKey"], "KEY")
        self.assertEqual(body["year"], 2025)
        self.assertEqual(body["metas"], [{
            "comercial": "KAREN CARRILLO", "metaAnual": 500, "metaOfertas": 10, "metaVisitas": 8,
        }])
        self.assertEqual(mock_post.call_args.kwargs["timeout"], 5)

    @patch("goals.requests.post")
    def test_not_ok_is_reported(self, mock_post):
        mock_post.return_value = _response(payload={"ok": False, "error": "bad key"})
        with self.assertRaises(GoalStoreError) as ctx:
            save_goals(2025, self.RECORDS, url=POST_URL)
        self.assertIn("bad key", str(ctx.exception))

    @patch("goals.requests.post")
    def test_http_error_is_reported(self, mock_post):
        mock_post.return_value = _response(status=403, payload=ValueError("html"), text="Forbidden")
        with self.assertRaises(GoalStoreError) as ctx:
            save_goals(2025, self.RECORDS, url=POST_URL)
        self.assertIn("403", str(ctx.exception))

    @patch("goals.requests.post")
    def test_transport_error_is_reported(self, mock_post):
        mock_post.side_effect = requests.exceptions.Timeout("slow")
        with self.assertRaises(GoalStoreError):
            save_goals(2025, self.RECORDS, url=POST_URL)


class TestGoalStore(unittest.TestCase):
    def setUp(self):
        self.store = GoalStore(get_url=GET_URL, post_url=POST_URL, api_key="KEY")

    @patch("goals.fetch_goals")
    def test_ensure_fetches_once(self, mock_fetch):
        mock_fetch.return_value = [GoalRecord("JUAN GARZÓN LINARES", 1000, 4, 6)]
        self.store.ensure(2025)
        self.store.ensure(2025)
        self.assertEqual(mock_fetch.call_count, 1)
        self.assertEqual(self.store.annual_target(2025, "Juan Garzon Linares"), 1000)
        self.assertEqual(self.store.offer_target(2025, "juan  garzón linares"), 4)
        self.assertEqual(self.store.visit_target(2025, "JUAN GARZÓN LINARES"), 6)

    @patch("goals.fetch_goals")
    def test_missing_is_zero(self, mock_fetch):
        mock_fetch.return_value = []
        self.store.ensure(2024)
        self.assertEqual(self.store.annual_target(2024, "KAREN CARRILLO"), 0)
        self.assertEqual(self.store.offer_target(2030, "KAREN CARRILLO"), 0)

    @patch("goals.fetch_goals")
    def test_refresh_overwrites(self, mock_fetch):
        mock_fetch.return_value = [GoalRecord("A", 1)]
        self.store.ensure(2025)
        mock_fetch.return_value = [GoalRecord("A", 2)]
        self.store.refresh(2025)
        self.assertEqual(self.store.annual_target(2025, "A"), 2)

    @patch("goals.save_goals")
    def test_save_replaces_cache(self, mock_save):
        self.store.save(2025, [GoalRecord("B", 0, 3, 0)])
        mock_save.assert_called_once()
        self.assertEqual(self.store.offer_target(2025, "b"), 3)

    @patch("goals.save_goals")
    def test_failed_save_keeps_cache(self, mock_save):
        mock_save.side_effect = GoalStoreError("rejected")
        with self.assertRaises(GoalStoreError):
            self.store.save(2025, [GoalRecord("B", 0, 3, 0)])
        self.assertEqual(self.store.records(2025), [])


if __name__ == '__main__':
    unittest.main()
