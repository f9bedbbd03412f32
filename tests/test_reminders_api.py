import base64
import importlib
import io
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from fastapi.testclient import TestClient
from PIL import Image, PngImagePlugin

ORIGIN = {"origin": "http://testserver"}
PDF_B64 = base64.b64encode(b"%PDF-1.4\n1 0 obj\n<<>>\nendobj\n").decode("ascii")


class ReminderApiTests(unittest.TestCase):
    owner_id = 1

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()

        import config

        self._config = config
        self._old = (config.DB_PATH, config.LOCAL_PRESCRIPTIONS_PATH, config.OWNER_ID, config.NOTIFY_EMAIL)
        config.DB_PATH = f"{self.tmp.name}/test.db"
        config.LOCAL_PRESCRIPTIONS_PATH = Path(self.tmp.name) / "prescriptions.json"
        config.OWNER_ID = self.owner_id
        config.NOTIFY_EMAIL = ""

        sys.modules.pop("main", None)
        main = importlib.import_module("main")
        self.app = main.app
        self.client = TestClient(main.app)
        self.client.__enter__()
        # First safe request hands out the CSRF cookie
        self.assertEqual(self.client.get("/api/reminders").status_code, 200)
        self.csrf = self.client.cookies.get("csrf_token")
        self.assertTrue(self.csrf)

    def tearDown(self):
        self.client.__exit__(None, None, None)
        (
            self._config.DB_PATH,
            self._config.LOCAL_PRESCRIPTIONS_PATH,
            self._config.OWNER_ID,
            self._config.NOTIFY_EMAIL,
        ) = self._old
        sys.modules.pop("main", None)
        self.tmp.cleanup()

    def _post(self, path, json=None):
        return self.client.post(path, headers={**ORIGIN, "x-csrf-token": self.csrf}, json=json)

    def _add_prescription(self, drugs=None):
        return self._post("/api/prescriptions", json={
            "doctor": "Dr. Okafor",
            "date": "2024-03-01",
            "drugs": drugs if drugs is not None else [
                {"name": "Metformin", "dosage": "500mg", "reminder_enabled": True,
                 "reminder_times": ["08:30", "19:30"]},
                {"name": "Vitamin D", "dosage": "1000 IU", "reminder_enabled": False},
            ],
        })

    def test_health_is_public(self):
        self.assertEqual(self.client.get("/health").json(), {"status": "ok"})

    def test_post_requires_csrf_header(self):
        resp = self.client.post("/api/reminders/schedule", headers=ORIGIN)
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.json(), {"error": "forbidden"})

        cross_site = self.client.post(
            "/api/reminders/schedule",
            headers={"origin": "http://evil.example", "x-csrf-token": self.csrf},
        )
        self.assertEqual(cross_site.status_code, 403)

    def test_initial_state(self):
        body = self.client.get("/api/reminders").json()
        self.assertEqual(body, {"permission_status": "default", "active_in_app_alert": None, "timers": []})

    def test_no_timers_until_permission_granted(self):
        self.assertEqual(self._add_prescription().status_code, 200)
        self.assertEqual(self.client.get("/api/reminders").json()["timers"], [])

        granted = self._post("/api/reminders/permission", json={"allow": True})
        self.assertEqual(granted.status_code, 200)
        self.assertEqual(granted.json(), {"ok": True, "permission_status": "granted"})

        timers = self.client.get("/api/reminders").json()["timers"]
        self.assertEqual(sorted(tm["time_of_day"] for tm in timers), ["08:30", "19:30"])
        self.assertTrue(all(tm["drug_name"] == "Metformin" for tm in timers))

    def test_denied_permission_is_final(self):
        denied = self._post("/api/reminders/permission", json={"allow": False})
        self.assertEqual(denied.json()["permission_status"], "denied")
        again = self._post("/api/reminders/permission", json={"allow": True})
        self.assertEqual(again.json()["permission_status"], "denied")
        self._add_prescription()
        self.assertEqual(self.client.get("/api/reminders").json()["timers"], [])

    def test_permission_payload_validated(self):
        resp = self._post("/api/reminders/permission", json={"allow": "yes"})
        self.assertEqual(resp.status_code, 400)
        self.assertFalse(resp.json()["ok"])

    def test_prescription_changes_reschedule(self):
        self._post("/api/reminders/permission", json={"allow": True})
        created = self._add_prescription()
        self.assertEqual(created.status_code, 200)
        rx = created.json()["prescription"]
        self.assertEqual(len(self.client.get("/api/reminders").json()["timers"]), 2)

        listed = self.client.get("/api/prescriptions").json()["prescriptions"]
        self.assertEqual([p["id"] for p in listed], [rx["id"]])

        deleted = self._post(f"/api/prescriptions/{rx['id']}/delete")
        self.assertEqual(deleted.json(), {"ok": True})
        self.assertEqual(self.client.get("/api/reminders").json()["timers"], [])

        missing = self._post(f"/api/prescriptions/{rx['id']}/delete")
        self.assertEqual(missing.status_code, 404)

    def test_manual_schedule_returns_timers(self):
        self._post("/api/reminders/permission", json={"allow": True})
        self._add_prescription()
        resp = self._post("/api/reminders/schedule")
        self.assertEqual(resp.status_code, 200)
        timers = resp.json()["timers"]
        self.assertEqual(len(timers), 2)
        self.assertTrue(all(tm["fire_at_epoch_millis"] > 0 for tm in timers))

    def test_enabled_reminder_without_times_gets_default(self):
        resp = self._add_prescription([{"name": "Lisinopril", "dosage": "10mg", "reminder_enabled": True}])
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["prescription"]["drugs"][0]["reminder_times"], ["09:00"])

    def test_invalid_prescriptions_rejected(self):
        bad_time = self._add_prescription([
            {"name": "Metformin", "dosage": "500mg", "reminder_enabled": True, "reminder_times": ["25:99"]},
        ])
        self.assertEqual(bad_time.status_code, 400)
        self.assertIn("25:99", bad_time.json()["error"])

        no_drugs = self._add_prescription([])
        self.assertEqual(no_drugs.status_code, 400)

        bad_date = self._post("/api/prescriptions", json={
            "doctor": "Dr. Okafor", "date": "03/01/2024", "drugs": [{"name": "Metformin"}],
        })
        self.assertEqual(bad_date.json(), {"ok": False, "error": "Invalid date format"})
        self.assertEqual(self.client.get("/api/prescriptions").json()["prescriptions"], [])

    def _add_with_attachment(self, file_data, file_type):
        return self._post("/api/prescriptions", json={
            "doctor": "Dr. Okafor", "date": "2024-03-01", "drugs": [{"name": "Metformin"}],
            "file_data": file_data, "file_type": file_type,
        })

    def test_attachment_saved_and_listed(self):
        resp = self._add_with_attachment(PDF_B64, "application/pdf")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["prescription"]["file_type"], "application/pdf")
        rx = self.client.get("/api/prescriptions").json()["prescriptions"][0]
        self.assertEqual((rx["file_type"], rx["file_data"]), ("application/pdf", PDF_B64))

        plain = self._add_prescription()
        self.assertEqual(plain.json()["prescription"]["file_data"], "")

    def test_image_attachment_reencoded_without_metadata(self):
        info = PngImagePlugin.PngInfo()
        info.add_text("Author", "Dr. Okafor")
        buf = io.BytesIO()
        Image.new("RGB", (4, 3), "white").save(buf, format="PNG", pnginfo=info)
        resp = self._add_with_attachment(base64.b64encode(buf.getvalue()).decode("ascii"), "image/png")
        self.assertEqual(resp.status_code, 200)
        stored = base64.b64decode(resp.json()["prescription"]["file_data"])
        img = Image.open(io.BytesIO(stored))
        self.assertEqual(img.size, (4, 3))
        self.assertNotIn("Author", img.info)

        broken = base64.b64encode(b"\x89PNG\r\n\x1a\n" + b"\x00" * 32).decode("ascii")
        resp = self._add_with_attachment(broken, "image/png")
        self.assertEqual(resp.json(), {"ok": False, "error": "Could not process image"})

    def test_invalid_attachments_rejected(self):
        mismatch = self._add_with_attachment(PDF_B64, "image/png")
        self.assertEqual(mismatch.json(), {"ok": False, "error": "Attachment content does not match its file type"})
        not_base64 = self._add_with_attachment("%%%not base64%%%", "application/pdf")
        self.assertEqual(not_base64.json(), {"ok": False, "error": "Attachment is not valid base64"})
        unsupported = self._add_with_attachment(PDF_B64, "text/plain")
        self.assertEqual(unsupported.status_code, 400)
        with mock.patch("routers.prescriptions.MAX_ATTACHMENT_SIZE", 16):
            too_big = self._add_with_attachment(PDF_B64, "application/pdf")
        self.assertEqual(too_big.status_code, 400)
        self.assertIn("MB or smaller", too_big.json()["error"])
        self.assertEqual(self.client.get("/api/prescriptions").json()["prescriptions"], [])

    def test_fired_reminder_shows_alert_until_dismissed(self):
        self._post("/api/reminders/permission", json={"allow": True})
        self._add_prescription()
        scheduler = self.app.state.scheduler
        rule = scheduler.timers[0].rule
        self.client.portal.call(scheduler.handle_fire, rule)

        alert = self.client.get("/api/reminders/alert").json()["active_in_app_alert"]
        self.assertEqual(alert, {"drug_name": "Metformin", "dosage": "500mg", "doctor": "Dr. Okafor"})
        self.assertEqual(len(self.client.get("/api/reminders").json()["timers"]), 2)

        self.assertEqual(self._post("/api/reminders/alert/dismiss").json(), {"ok": True})
        self.assertIsNone(self.client.get("/api/reminders/alert").json()["active_in_app_alert"])
        self.assertEqual(self._post("/api/reminders/alert/dismiss").status_code, 200)


class LocalOwnerReminderApiTests(ReminderApiTests):
    owner_id = None

    def test_prescriptions_go_to_local_cache(self):
        self._add_prescription()
        cached = self._config.LOCAL_PRESCRIPTIONS_PATH.read_text(encoding="utf-8")
        self.assertIn("Metformin", cached)


if __name__ == "__main__":
    unittest.main()
