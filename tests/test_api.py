"""End-to-end tests of the editor HTTP API with the Gemini client patched out."""
# pylint: disable=missing-function-docstring

import io
import os
import tempfile
import unittest
from datetime import timedelta
from pathlib import Path
from unittest.mock import MagicMock, patch

from fastapi.testclient import TestClient
from google.genai import types as genai_types
from PIL import Image
from sqlalchemy import text

from nanobanana_editor.api import db, sessions
from nanobanana_editor.api.main import app
from nanobanana_editor.api.schemas import EditResponse


def _encode(size=(64, 32), fmt="PNG", color=(0, 160, 0)):
    out = io.BytesIO()
    Image.new("RGB", size, color).save(out, format=fmt)
    return out.getvalue()


def _image_response(data: bytes, mime_type="image/png"):
    part = genai_types.Part(inline_data=genai_types.Blob(mime_type=mime_type, data=data))
    return genai_types.GenerateContentResponse(
        candidates=[genai_types.Candidate(content=genai_types.Content(role="model", parts=[part]))]
    )


def _text_response(message: str):
    return genai_types.GenerateContentResponse(
        candidates=[genai_types.Candidate(content=genai_types.Content(role="model", parts=[genai_types.Part(text=message)]))]
    )


class EditorApiTestCase(unittest.TestCase):
    """Fresh SQLite database and storage directory per test."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.env_patch = patch.dict(
            os.environ,
            {
                "EDITOR_DATABASE_URL": f"sqlite:///{Path(self.tmp.name) / 'editor.db'}",
                "IMAGE_STORAGE_DIR": str(Path(self.tmp.name) / "storage"),
                "GEMINI_API_KEY": "test-key",
            },
        )
        self.env_patch.start()
        os.environ.pop("PUBLIC_API_BASE_URL", None)
        os.environ.pop("PREVIEW_MAX_SIDE", None)
        db.reset_engine()
        db.ensure_schema()

        self.gemini = MagicMock()
        self.client_patch = patch("nanobanana_editor.api.gemini_service.get_client", return_value=self.gemini)
        self.client_patch.start()
        self.client = TestClient(app)

    def tearDown(self):
        self.client_patch.stop()
        db.reset_engine()
        self.env_patch.stop()
        self.tmp.cleanup()

    def new_session(self) -> str:
        resp = self.client.post("/sessions")
        self.assertEqual(resp.status_code, 201)
        return resp.json()["id"]

    def upload(self, session_id: str, *files):
        return self.client.post(f"/sessions/{session_id}/images", files=[("files", f) for f in files])

    def set_status(self, session_id: str, value: str, age: timedelta = timedelta(0)) -> None:
        with db.get_engine().begin() as conn:
            conn.execute(
                text("UPDATE editor_sessions SET status = :s, updated_at = :t WHERE id = :id"),
                {"s": value, "t": db.utcnow() - age, "id": session_id},
            )


class SessionLifecycleTests(EditorApiTestCase):
    def test_health(self):
        self.assertEqual(self.client.get("/").json(), {"message": "Healthy"})

    def test_config(self):
        body = self.client.get("/editor/config").json()
        self.assertEqual(body["model"], "gemini-2.5-flash-image")
        self.assertEqual(body["default_instruction"], sessions.DEFAULT_INSTRUCTION)
        self.assertEqual(body["preview_max_side"], 512)

    def test_new_session_is_idle_with_default_instruction(self):
        session_id = self.new_session()
        body = self.client.get(f"/sessions/{session_id}").json()
        self.assertEqual(body["status"], "IDLE")
        self.assertEqual(body["instruction"], "Remove from this image those green markers")
        self.assertEqual(body["images"], [])
        self.assertIsNone(body["result"])
        self.assertEqual(body["error_message"], "")
        self.assertFalse(body["can_generate"])

    def test_unknown_session(self):
        self.assertEqual(self.client.get("/sessions/nope").status_code, 404)
        self.assertEqual(self.client.post("/sessions/nope/generate").status_code, 404)

    def test_set_instruction(self):
        session_id = self.new_session()
        resp = self.client.put(f"/sessions/{session_id}/instruction", json={"instruction": "add sunglasses"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["instruction"], "add sunglasses")

    def test_delete_session_removes_files(self):
        session_id = self.new_session()
        self.upload(session_id, ("a.png", _encode(), "image/png"))
        session_dir = Path(self.tmp.name) / "storage" / "sessions" / session_id
        self.assertTrue(session_dir.is_dir())

        self.assertEqual(self.client.delete(f"/sessions/{session_id}").status_code, 204)
        self.assertEqual(self.client.get(f"/sessions/{session_id}").status_code, 404)
        self.assertFalse(session_dir.exists())


class UploadTests(EditorApiTestCase):
    def test_upload_keeps_order_and_builds_previews(self):
        session_id = self.new_session()
        body = self.upload(
            session_id,
            ("first.png", _encode((1200, 600)), "image/png"),
            ("second.jpg", _encode((10, 10), fmt="JPEG"), "image/jpeg"),
        ).json()

        self.assertEqual([img["filename"] for img in body["images"]], ["first.png", "second.jpg"])
        first = body["images"][0]
        self.assertEqual((first["width"], first["height"]), (1200, 600))
        self.assertEqual(first["mime_type"], "image/png")
        self.assertTrue(body["can_generate"])

        preview = self.client.get(first["preview_url"])
        self.assertEqual(preview.status_code, 200)
        with Image.open(io.BytesIO(preview.content)) as im:
            self.assertEqual(im.size, (512, 256))

        original = self.client.get(first["url"])
        self.assertEqual(original.content, _encode((1200, 600)))

    def test_non_images_are_skipped_with_messages(self):
        session_id = self.new_session()
        body = self.upload(
            session_id,
            ("notes.txt", b"hello", "text/plain"),
            ("ok.png", _encode(), "image/png"),
            ("data.csv", b"a,b", "text/csv"),
        ).json()

        self.assertEqual(len(body["images"]), 1)
        self.assertEqual(
            body["error_message"],
            'File "notes.txt" is not a valid image. Skipping. File "data.csv" is not a valid image. Skipping.',
        )

    def test_next_upload_clears_previous_messages(self):
        session_id = self.new_session()
        self.upload(session_id, ("notes.txt", b"hello", "text/plain"))
        body = self.upload(session_id, ("ok.png", _encode(), "image/png")).json()
        self.assertEqual(body["error_message"], "")

    def test_undecodable_image_type_is_kept_without_preview(self):
        session_id = self.new_session()
        svg = b'<svg xmlns="http://www.w3.org/2000/svg" width="4" height="4"></svg>'
        body = self.upload(session_id, ("logo.svg", svg, "image/svg+xml")).json()

        image = body["images"][0]
        self.assertIsNone(image["width"])
        preview = self.client.get(image["preview_url"])
        self.assertEqual(preview.content, svg)
        self.assertTrue(preview.headers["content-type"].startswith("image/svg+xml"))

    def test_remove_image(self):
        session_id = self.new_session()
        body = self.upload(
            session_id,
            ("a.png", _encode(), "image/png"),
            ("b.png", _encode(), "image/png"),
        ).json()
        first_id = body["images"][0]["id"]

        body = self.client.delete(f"/sessions/{session_id}/images/{first_id}").json()
        self.assertEqual([img["filename"] for img in body["images"]], ["b.png"])
        self.assertEqual(self.client.get(f"/sessions/{session_id}/images/{first_id}/file").status_code, 404)

    def test_remove_unknown_image(self):
        session_id = self.new_session()
        self.assertEqual(self.client.delete(f"/sessions/{session_id}/images/missing").status_code, 404)

    def test_clear_images(self):
        session_id = self.new_session()
        self.upload(session_id, ("a.png", _encode(), "image/png"), ("x.txt", b"x", "text/plain"))

        body = self.client.delete(f"/sessions/{session_id}/images").json()
        self.assertEqual(body["images"], [])
        self.assertEqual(body["error_message"], "")
        self.assertEqual(body["status"], "IDLE")
        uploads = Path(self.tmp.name) / "storage" / "sessions" / session_id / "uploads"
        self.assertEqual(list(uploads.iterdir()), [])

    def test_changes_blocked_while_processing(self):
        session_id = self.new_session()
        self.upload(session_id, ("a.png", _encode(), "image/png"))
        self.set_status(session_id, "PROCESSING")

        self.assertEqual(self.upload(session_id, ("b.png", _encode(), "image/png")).status_code, 409)
        self.assertEqual(self.client.delete(f"/sessions/{session_id}/images").status_code, 409)

    def test_remove_image_blocked_while_processing(self):
        session_id = self.new_session()
        image_id = self.upload(session_id, ("a.png", _encode(), "image/png")).json()["images"][0]["id"]
        self.set_status(session_id, "PROCESSING")

        self.assertEqual(self.client.delete(f"/sessions/{session_id}/images/{image_id}").status_code, 409)
        self.assertEqual(len(self.client.get(f"/sessions/{session_id}").json()["images"]), 1)

    def test_delete_session_blocked_while_processing(self):
        session_id = self.new_session()
        self.upload(session_id, ("a.png", _encode(), "image/png"))
        self.set_status(session_id, "PROCESSING")

        self.assertEqual(self.client.delete(f"/sessions/{session_id}").status_code, 409)
        self.assertEqual(self.client.get(f"/sessions/{session_id}").status_code, 200)
        self.assertTrue((Path(self.tmp.name) / "storage" / "sessions" / session_id).is_dir())

    def test_stale_processing_does_not_block_changes(self):
        session_id = self.new_session()
        self.upload(session_id, ("a.png", _encode(), "image/png"))
        self.set_status(session_id, "PROCESSING", age=timedelta(seconds=sessions.DEFAULT_GENERATION_TIMEOUT_SECONDS + 60))

        body = self.upload(session_id, ("b.png", _encode(), "image/png")).json()
        self.assertEqual(len(body["images"]), 2)
        self.assertEqual(body["status"], "IDLE")


class GenerateTests(EditorApiTestCase):
    def prepared_session(self, *files) -> str:
        session_id = self.new_session()
        self.upload(session_id, *(files or [("a.png", _encode(), "image/png")]))
        return session_id

    def test_requires_images(self):
        session_id = self.new_session()
        resp = self.client.post(f"/sessions/{session_id}/generate")
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["detail"], "Please upload at least one image and provide a prompt.")

        body = self.client.get(f"/sessions/{session_id}").json()
        self.assertEqual(body["status"], "IDLE")
        self.assertEqual(body["error_message"], "Please upload at least one image and provide a prompt.")
        self.gemini.models.generate_content.assert_not_called()

    def test_requires_non_blank_instruction(self):
        session_id = self.prepared_session()
        self.client.put(f"/sessions/{session_id}/instruction", json={"instruction": "   "})
        self.assertEqual(self.client.post(f"/sessions/{session_id}/generate").status_code, 400)

    def test_success_stores_result(self):
        edited = _encode((20, 10), fmt="JPEG", color=(255, 255, 0))
        self.gemini.models.generate_content.return_value = _image_response(edited, "image/jpeg")
        session_id = self.prepared_session(
            ("a.png", _encode(), "image/png"),
            ("b.jpg", _encode(fmt="JPEG"), "image/jpeg"),
        )

        body = self.client.post(f"/sessions/{session_id}/generate").json()

        self.assertEqual(body["status"], "SUCCESS")
        self.assertEqual(body["error_message"], "")
        self.assertEqual(body["result"]["mime_type"], "image/jpeg")
        self.assertEqual((body["result"]["width"], body["result"]["height"]), (20, 10))

        parts = self.gemini.models.generate_content.call_args.kwargs["contents"][0].parts
        self.assertEqual(parts[0].text, sessions.DEFAULT_INSTRUCTION)
        self.assertEqual(parts[1].inline_data.data, _encode())
        self.assertEqual(parts[2].inline_data.mime_type, "image/jpeg")

        download = self.client.get(body["result"]["url"])
        self.assertEqual(download.status_code, 200)
        self.assertEqual(download.content, edited)
        self.assertIn("gemini-edit.jpg", download.headers["content-disposition"])

    def test_text_only_reply_is_an_error(self):
        self.gemini.models.generate_content.return_value = _text_response("I cannot find any green markers.")
        session_id = self.prepared_session()

        body = self.client.post(f"/sessions/{session_id}/generate").json()
        self.assertEqual(body["status"], "ERROR")
        self.assertEqual(body["error_message"], "I cannot find any green markers.")
        self.assertIsNone(body["result"])

    def test_service_failure_is_an_error(self):
        self.gemini.models.generate_content.side_effect = ConnectionError("network unreachable")
        session_id = self.prepared_session()

        body = self.client.post(f"/sessions/{session_id}/generate").json()
        self.assertEqual(body["status"], "ERROR")
        self.assertEqual(body["error_message"], "network unreachable")

    def test_failed_response_without_message(self):
        session_id = self.prepared_session()
        with patch(
            "nanobanana_editor.api.sessions.gemini_service.edit_image_with_gemini",
            return_value=EditResponse(success=False),
        ):
            body = self.client.post(f"/sessions/{session_id}/generate").json()
        self.assertEqual(body["error_message"], "Failed to generate image.")

    def test_unexpected_exception_is_an_error(self):
        session_id = self.prepared_session()
        with patch(
            "nanobanana_editor.api.sessions.gemini_service.edit_image_with_gemini",
            side_effect=KeyError("boom"),
        ):
            body = self.client.post(f"/sessions/{session_id}/generate").json()
        self.assertEqual(body["status"], "ERROR")
        self.assertEqual(body["error_message"], "An unexpected error occurred.")

    def test_failure_keeps_previous_result(self):
        self.gemini.models.generate_content.return_value = _image_response(_encode((5, 5)))
        session_id = self.prepared_session()
        first = self.client.post(f"/sessions/{session_id}/generate").json()

        self.gemini.models.generate_content.return_value = _text_response("nope")
        body = self.client.post(f"/sessions/{session_id}/generate").json()
        self.assertEqual(body["status"], "ERROR")
        self.assertEqual(body["result"], first["result"])

    def test_second_generation_blocked_while_processing(self):
        session_id = self.prepared_session()
        self.set_status(session_id, "PROCESSING")

        resp = self.client.post(f"/sessions/{session_id}/generate")
        self.assertEqual(resp.status_code, 409)
        self.gemini.models.generate_content.assert_not_called()

    def test_stale_processing_can_be_reclaimed(self):
        self.gemini.models.generate_content.return_value = _image_response(_encode((5, 5)))
        session_id = self.prepared_session()
        self.set_status(session_id, "PROCESSING", age=timedelta(minutes=10))
        self.assertTrue(self.client.get(f"/sessions/{session_id}").json()["can_generate"])

        body = self.client.post(f"/sessions/{session_id}/generate").json()
        self.assertEqual(body["status"], "SUCCESS")
        self.gemini.models.generate_content.assert_called_once()

    def test_generation_timeout_is_configurable(self):
        session_id = self.prepared_session()
        self.set_status(session_id, "PROCESSING", age=timedelta(minutes=10))
        with patch.dict(os.environ, {"GENERATION_TIMEOUT_SECONDS": "3600"}):
            self.assertEqual(self.client.post(f"/sessions/{session_id}/generate").status_code, 409)

    def test_new_upload_clears_result(self):
        self.gemini.models.generate_content.return_value = _image_response(_encode((5, 5)))
        session_id = self.prepared_session()
        self.client.post(f"/sessions/{session_id}/generate")

        body = self.upload(session_id, ("b.png", _encode(), "image/png")).json()
        self.assertIsNone(body["result"])
        self.assertEqual(body["status"], "IDLE")
        self.assertEqual(self.client.get(f"/sessions/{session_id}/result").status_code, 404)

    def test_removing_last_image_clears_result(self):
        self.gemini.models.generate_content.return_value = _image_response(_encode((5, 5)))
        session_id = self.prepared_session()
        body = self.client.post(f"/sessions/{session_id}/generate").json()
        image_id = body["images"][0]["id"]

        body = self.client.delete(f"/sessions/{session_id}/images/{image_id}").json()
        self.assertIsNone(body["result"])
        self.assertEqual(body["status"], "IDLE")
        results = Path(self.tmp.name) / "storage" / "sessions" / session_id / "results"
        self.assertEqual(list(results.iterdir()), [])

    def test_history_records_operations(self):
        self.gemini.models.generate_content.return_value = _image_response(_encode((5, 5)))
        session_id = self.prepared_session()
        self.client.put(f"/sessions/{session_id}/instruction", json={"instruction": "sharpen"})
        self.client.post(f"/sessions/{session_id}/generate")

        history = self.client.get(f"/sessions/{session_id}/history").json()
        self.assertEqual([h["operation"] for h in history], ["upload", "instruction", "generate"])
        self.assertEqual(history[-1]["params"], {"images": 1, "success": True})


if __name__ == "__main__":
    unittest.main()
