import unittest
from unittest.mock import patch

from smartcompras import create_app
from smartcompras.config import Config
from smartcompras.db import close_db
from smartcompras.errors import StoreUnavailableError
from smartcompras.routes.requisition_routes import SERVICE_EXTENSION_KEY
from smartcompras.ui_strings import error_message
from tests.helpers.temp_db import TempDbSandbox


ADMIN_HEADERS = {"X-User-Id": "999", "X-User-Role": "admin"}


class ErrorHandlingApiTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="error_api")
        self.app = create_app(self._temp_db.make_config(Config, TESTING=True))
        self.client = self.app.test_client()
        self.service = self.app.extensions[SERVICE_EXTENSION_KEY]

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()

    def test_unexpected_error_is_masked(self) -> None:
        with patch.object(self.service, "list_requisitions", side_effect=RuntimeError("disk on fire")):
            response = self.client.get("/api/requisitions", headers=ADMIN_HEADERS)

        self.assertEqual(response.status_code, 500)
        payload = response.get_json()
        self.assertEqual(payload.get("error"), "unexpected_error")
        self.assertEqual(payload.get("message"), error_message("unexpected_error"))
        self.assertTrue((payload.get("request_id") or "").strip())
        body = response.get_data(as_text=True)
        self.assertNotIn("Traceback", body)
        self.assertNotIn("disk on fire", body)

    def test_store_unavailable_maps_to_503(self) -> None:
        with patch.object(self.service.store, "get", side_effect=StoreUnavailableError()):
            with patch.object(self.service, "_sleep"):
                response = self.client.get("/api/requisitions/1", headers=ADMIN_HEADERS)

        self.assertEqual(response.status_code, 503)
        payload = response.get_json()
        self.assertEqual(payload.get("error"), "store_unavailable")
        self.assertEqual(payload.get("message"), error_message("store_unavailable"))

    def test_unknown_route_keeps_http_status(self) -> None:
        response = self.client.get("/api/desconhecida", headers=ADMIN_HEADERS)
        self.assertEqual(response.status_code, 404)
        self.assertTrue(response.headers.get("X-Request-Id"))


if __name__ == "__main__":
    unittest.main()
