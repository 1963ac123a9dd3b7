import base64
import tempfile
import unittest
from pathlib import Path

from chatbridge.credentials import CredentialStore
from chatbridge.qr import DATA_URL_PREFIX, render_challenge


class TestCredentialStore(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)

    def tearDown(self):
        self._tmp.cleanup()

    def test_has_credentials_tracks_creds_file(self):
        store = CredentialStore(self.root / "auth")
        self.assertFalse(store.has_credentials())

        store.ensure_directory()
        (self.root / "auth" / "creds.json").write_text("{}")

        self.assertTrue(store.has_credentials())

    def test_clear_removes_files_and_extra_paths(self):
        auth = self.root / "auth"
        auth.mkdir()
        (auth / "creds.json").write_text("{}")
        (auth / "pre-key-1.json").write_text("{}")
        (auth / "nested").mkdir()
        db = self.root / "client.db"
        db.write_text("")
        store = CredentialStore(auth, [db, self.root / "missing.db"])

        removed = store.clear()

        self.assertEqual(removed, 3)
        self.assertEqual([p.name for p in auth.iterdir()], ["nested"])
        self.assertFalse(db.exists())

    def test_clear_missing_directory_is_noop(self):
        self.assertEqual(CredentialStore(self.root / "nope").clear(), 0)


class TestRenderChallenge(unittest.TestCase):
    def test_qr_becomes_png_data_url(self):
        rendered = render_challenge("2@abc,def,ghi,jkl")

        self.assertTrue(rendered.startswith(DATA_URL_PREFIX))
        png = base64.b64decode(rendered[len(DATA_URL_PREFIX):])
        self.assertEqual(png[:8], b"\x89PNG\r\n\x1a\n")

    def test_pairing_code_is_returned_as_is(self):
        self.assertEqual(render_challenge("WXYZ-9876", "pairing_code"), "WXYZ-9876")


if __name__ == "__main__":
    unittest.main()
