#!/usr/bin/env python3
"""
Tests for bundle handling and the publish orchestrator (scripts/vibecodr.py):
file entries, reserved names, bundle limits, directory loading, the
create/upload/publish sequence, resumable failures and the CLI.
"""

from __future__ import annotations

import asyncio
import io
import json
import shutil
import sys
import tempfile
import time
import unittest
from pathlib import Path
from unittest import mock

import httpx

_SCRIPTS_DIR = str(Path(__file__).resolve().parent.parent / "scripts")
if _SCRIPTS_DIR not in sys.path:
    sys.path.insert(0, _SCRIPTS_DIR)

import vibecodr  # noqa: E402

API = "https://api.vibecodr.space"


# ===========================================================================
# File entries & bundle validation
# ===========================================================================


class TestFileEntry(unittest.TestCase):

    def test_text_entry(self):
        entry = vibecodr.FileEntry.create("App.tsx", "export default () => null")
        self.assertEqual(entry.content_class, vibecodr.TEXT)
        self.assertEqual(entry.size, len("export default () => null"))

    def test_size_counts_utf8_bytes(self):
        entry = vibecodr.FileEntry.create("README.md", "héllo")
        self.assertEqual(entry.size, 6)
        self.assertEqual(entry.as_bytes(), "héllo".encode("utf-8"))

    def test_binary_entry(self):
        png = b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR"
        entry = vibecodr.FileEntry.create("logo.png", png)
        self.assertEqual(entry.content_class, vibecodr.BINARY)
        self.assertEqual(entry.as_bytes(), png)

    def test_binary_detection_samples_middle_of_large_content(self):
        data = bytearray(b"a" * 20000)
        data[10000] = 0
        self.assertEqual(vibecodr.detect_content_class(bytes(data)), vibecodr.BINARY)

    def test_control_character_threshold(self):
        mostly_text = b"line\n" * 100 + b"\x01" * 10
        noisy = b"ab" + b"\x02" * 10
        self.assertEqual(vibecodr.detect_content_class(mostly_text), vibecodr.TEXT)
        self.assertEqual(vibecodr.detect_content_class(noisy), vibecodr.BINARY)

    def test_rejects_non_text_content(self):
        for content in (3, None, ["a"]):
            with self.subTest(content=content):
                with self.assertRaises(vibecodr.PublishValidationError) as ctx:
                    vibecodr.FileEntry.create("a.txt", content)
                self.assertEqual(ctx.exception.context["path"], "a.txt")
        self.assertEqual(vibecodr.FileEntry.create("a.bin", bytearray(b"\x00\x01")).size, 2)

    def test_repr_hides_content(self):
        entry = vibecodr.FileEntry.create("a.txt", "top secret body")
        self.assertNotIn("top secret body", repr(entry))

    def test_coerce_mapping(self):
        entry = vibecodr.coerce_file_entry({"path": "a.ts", "content": "x"})
        self.assertEqual(entry.path, "a.ts")
        with self.assertRaises(vibecodr.PublishValidationError):
            vibecodr.coerce_file_entry({"path": "a.ts"})


class TestMimeTypes(unittest.TestCase):

    _CASES = [
        ("index.html", "text/html"),
        ("styles.css", "text/css"),
        ("main.js", "application/javascript"),
        ("module.mjs", "application/javascript"),
        ("App.jsx", "application/javascript"),
        ("App.tsx", "application/typescript"),
        ("lib/util.ts", "application/typescript"),
        ("data.json", "application/json"),
        ("bundle.js.map", "application/json"),
        ("icon.svg", "image/svg+xml"),
        ("photo.JPG", "image/jpeg"),
        ("font.woff2", "font/woff2"),
        ("README.md", "text/markdown"),
        ("config.yml", "text/yaml"),
        ("module.wasm", "application/wasm"),
        ("Makefile", "application/octet-stream"),
        ("archive.xyz", "application/octet-stream"),
    ]

    def test_mime_table(self):
        for path, expected in self._CASES:
            with self.subTest(path=path):
                self.assertEqual(vibecodr.get_mime_type(path), expected)


class TestValidateFileName(unittest.TestCase):

    def test_reserved_names(self):
        for name in (
            "entry.tsx",
            "_vibecodr__runtime.js",
            "__VCSHIM_react.js",
            "node_modules/react/index.js",
            "package.json",
            "package-lock.json",
            ".env",
            ".env.local",
        ):
            with self.subTest(name=name):
                ok, reason = vibecodr.validate_file_name(name)
                self.assertFalse(ok)
                self.assertIn("forbidden pattern", reason)

    def test_allowed_names(self):
        for name in ("App.tsx", "src/entry.tsx", "docs/package.json", "env.ts"):
            with self.subTest(name=name):
                self.assertEqual(vibecodr.validate_file_name(name), (True, ""))

    def test_empty_name(self):
        ok, _ = vibecodr.validate_file_name("")
        self.assertFalse(ok)


class TestValidateBundle(unittest.TestCase):

    def test_valid_bundle_summary(self):
        summary = vibecodr.validate_bundle([
            {"path": "App.tsx", "content": "abc"},
            vibecodr.FileEntry.create("logo.png", b"\x00\x01"),
        ])
        self.assertEqual(summary, vibecodr.BundleSummary(valid=True, total_size=5, file_count=2))

    def test_too_many_files(self):
        files = [{"path": f"f{i}.ts", "content": ""} for i in range(101)]
        with self.assertRaises(vibecodr.TooManyFiles) as ctx:
            vibecodr.validate_bundle(files)
        self.assertEqual(ctx.exception.context["file_count"], 101)

    def test_reserved_name(self):
        with self.assertRaises(vibecodr.ForbiddenFileName) as ctx:
            vibecodr.validate_bundle([{"path": "package.json", "content": "{}"}])
        self.assertEqual(ctx.exception.context["path"], "package.json")

    def test_unsafe_path(self):
        with self.assertRaises(vibecodr.PublishValidationError) as ctx:
            vibecodr.validate_bundle([{"path": "../escape.ts", "content": ""}])
        self.assertIn("Invalid file path", ctx.exception.message)

    def test_too_large(self):
        with self.assertRaises(vibecodr.BundleTooLarge) as ctx:
            vibecodr.validate_bundle([{"path": "a.txt", "content": "x" * 11}], max_size=10)
        self.assertEqual(ctx.exception.context["total_size"], 11)

    def test_validation_errors_share_a_code_family(self):
        for exc_cls in (vibecodr.ForbiddenFileName, vibecodr.BundleTooLarge, vibecodr.TooManyFiles):
            with self.subTest(exc=exc_cls.__name__):
                self.assertTrue(issubclass(exc_cls, vibecodr.PublishValidationError))


class TestLoadDirectory(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp(prefix="vibecodr_test_dir_")
        self.root = Path(self.tmpdir)

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def _write(self, relpath: str, content) -> None:
        fpath = self.root / relpath
        fpath.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            fpath.write_bytes(content)
        else:
            fpath.write_text(content, encoding="utf-8")

    def test_collects_files_in_order_with_posix_paths(self):
        self._write("App.tsx", "export default 1")
        self._write("src/components/Button.tsx", "export const B = 1")
        self._write("assets/logo.png", b"\x89PNG\x00\x00")

        entries = vibecodr.load_directory(self.root)

        self.assertEqual([e.path for e in entries], ["App.tsx", "assets/logo.png", "src/components/Button.tsx"])
        by_path = {e.path: e for e in entries}
        self.assertEqual(by_path["App.tsx"].content, "export default 1")
        self.assertEqual(by_path["assets/logo.png"].content_class, vibecodr.BINARY)
        self.assertEqual(by_path["assets/logo.png"].content, b"\x89PNG\x00\x00")

    def test_skips_hidden_and_dependency_dirs(self):
        self._write("App.tsx", "x")
        self._write(".env", "SECRET=1")
        self._write(".git/config", "x")
        self._write("node_modules/react/index.js", "x")
        self._write("__pycache__/x.pyc", b"\x00")

        entries = vibecodr.load_directory(self.root)

        self.assertEqual([e.path for e in entries], ["App.tsx"])

    @unittest.skipIf(sys.platform == "win32", "symlinks need privileges on Windows")
    def test_skips_symlink_escaping_root(self):
        outside = Path(tempfile.mkdtemp(prefix="vibecodr_test_outside_"))
        self.addCleanup(shutil.rmtree, outside, True)
        (outside / "secret.txt").write_text("nope", encoding="utf-8")
        self._write("App.tsx", "x")
        (self.root / "link.txt").symlink_to(outside / "secret.txt")

        entries = vibecodr.load_directory(self.root)

        self.assertEqual([e.path for e in entries], ["App.tsx"])

    @unittest.skipIf(sys.platform == "win32", "symlinks need privileges on Windows")
    def test_skips_broken_symlink(self):
        self._write("App.tsx", "x")
        (self.root / "gone.txt").symlink_to(self.root / "deleted.txt")

        with self.assertLogs("vibecodr", "WARNING") as logs:
            entries = vibecodr.load_directory(self.root)

        self.assertEqual([e.path for e in entries], ["App.tsx"])
        self.assertIn("broken symlink", logs.output[0])

    def test_not_a_directory(self):
        with self.assertRaises(vibecodr.PublishValidationError):
            vibecodr.load_directory(self.root / "missing")


# ===========================================================================
# Publish orchestrator
# ===========================================================================


class _FakePlatform:
    """MockTransport handler emulating the capsule endpoints.

    ``upload_failures`` maps a 1-based upload number to the response that
    upload should get; ``publish_failures`` is a list of responses consumed
    by publish calls before they start succeeding.
    """

    def __init__(self, upload_failures=None, publish_failures=None, create_response=None, reject_token=None):
        self.upload_failures = dict(upload_failures or {})
        self.publish_failures = list(publish_failures or [])
        self.create_response = create_response
        self.reject_token = reject_token
        self.requests: list[httpx.Request] = []
        self.uploads: list[str] = []
        self._upload_count = 0

    def calls(self, kind: str) -> list[httpx.Request]:
        if kind == "create":
            return [r for r in self.requests if r.url.path == "/capsules/empty"]
        if kind == "upload":
            return [r for r in self.requests if r.method == "PUT"]
        if kind == "publish":
            return [r for r in self.requests if r.url.path.endswith("/publish")]
        return [r for r in self.requests if r.url.path == "/auth/cli/exchange"]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/auth/cli/exchange":
            return httpx.Response(200, json={"access_token": "plat-new", "expires_at": int(time.time()) + 3600})

        if self.reject_token and request.headers.get("Authorization") == f"Bearer {self.reject_token}":
            return httpx.Response(401, json={"error": "auth.invalid_token"})

        if path == "/capsules/empty":
            return self.create_response or httpx.Response(200, json={"success": True, "capsuleId": "cap-1"})

        if request.method == "PUT" and path.startswith("/capsules/cap-1/files/"):
            self._upload_count += 1
            failure = self.upload_failures.get(self._upload_count)
            if failure is not None:
                return failure
            name = path[len("/capsules/cap-1/files/"):]
            self.uploads.append(name)
            return httpx.Response(
                200,
                json={"ok": True, "path": name, "size": len(request.content), "totalSize": len(request.content), "etag": "e1"},
            )

        if path == "/capsules/cap-1/publish":
            if self.publish_failures:
                return self.publish_failures.pop(0)
            return httpx.Response(200, json={"postId": "post-1"})

        return httpx.Response(404, json={"error": "not_found"})


def _files(*names: str) -> list[dict]:
    return [{"path": name, "content": f"// {name}\n"} for name in names]


class _PublisherTestCase(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.sleeps: list[float] = []
        self.clients: list[vibecodr.VibecodrClient] = []

    async def asyncTearDown(self):
        for client in self.clients:
            await client.aclose()

    async def _sleep(self, delay: float) -> None:
        self.sleeps.append(delay)

    def _publisher(self, platform, credentials=None, **kwargs) -> vibecodr.Publisher:
        client = vibecodr.VibecodrClient(transport=httpx.MockTransport(platform), sleep=self._sleep)
        self.clients.append(client)
        if callable(credentials):
            credentials = credentials(client)
        return vibecodr.Publisher(client, credentials, **kwargs)


class TestPublish(_PublisherTestCase):

    async def test_end_to_end_publish(self):
        platform = _FakePlatform()
        publisher = self._publisher(platform)

        result = await publisher.publish(
            "Demo", [{"path": "App.tsx", "content": "export default () => null"}], token="tok",
        )

        self.assertEqual(result, vibecodr.PublishResult(
            post_id="post-1", capsule_id="cap-1", url="https://vibecodr.space/player/post-1",
        ))
        create, upload, publish = platform.requests
        self.assertEqual(json.loads(create.content), {"title": "Demo"})
        self.assertEqual(create.headers["Authorization"], "Bearer tok")
        self.assertEqual(upload.headers["Content-Type"], "application/typescript")
        self.assertEqual(upload.content, b"export default () => null")
        self.assertEqual(publish.content, b"")

    async def test_entry_runner_and_visibility_are_sent(self):
        platform = _FakePlatform()
        publisher = self._publisher(platform)

        await publisher.publish(
            "Demo", _files("App.tsx"), entry="App.tsx", runner="client-static", visibility="unlisted", token="tok",
        )

        create = platform.calls("create")[0]
        self.assertEqual(json.loads(create.content), {"title": "Demo", "entry": "App.tsx", "runner": "client-static"})
        publish = platform.calls("publish")[0]
        self.assertEqual(json.loads(publish.content), {"visibility": "unlisted"})

    async def test_uploads_are_sequential_and_path_encoded(self):
        platform = _FakePlatform()
        publisher = self._publisher(platform)

        await publisher.publish("Demo", _files("App.tsx", "src/util.ts", "src/deep/x.ts"), token="tok")

        self.assertEqual(platform.uploads, ["App.tsx", "src/util.ts", "src/deep/x.ts"])
        raw = [r.url.raw_path for r in platform.calls("upload")]
        self.assertEqual(raw[1], b"/capsules/cap-1/files/src%2Futil.ts")

    async def test_validation_happens_before_any_request(self):
        platform = _FakePlatform()
        publisher = self._publisher(platform)
        cases = [
            ("", _files("App.tsx"), "public", vibecodr.PublishValidationError),
            ("Demo", [], "public", vibecodr.PublishValidationError),
            ("Demo", _files("App.tsx"), "friends", vibecodr.PublishValidationError),
            ("Demo", _files("package.json"), "public", vibecodr.ForbiddenFileName),
            ("Demo", _files("../x.ts"), "public", vibecodr.PublishValidationError),
        ]
        for title, files, visibility, exc_cls in cases:
            with self.subTest(title=title, files=[f["path"] for f in files], visibility=visibility):
                with self.assertRaises(exc_cls):
                    await publisher.publish(title, files, visibility=visibility, token="tok")
        self.assertEqual(platform.requests, [])

    async def test_partial_upload_is_resumable(self):
        """Upload 2 of 3 fails: recovery names the capsule and the one uploaded file."""
        platform = _FakePlatform(upload_failures={2: httpx.Response(400, json={"error": "bad_file"})})
        publisher = self._publisher(platform)
        files = _files("App.tsx", "b.ts", "c.ts")

        with self.assertRaises(vibecodr.PublishFailed) as ctx:
            await publisher.publish("Demo", files, token="tok")

        err = ctx.exception
        self.assertEqual(err.code, "PUBLISH_FAILED")
        self.assertIsInstance(err.step_error, vibecodr.FileUploadError)
        self.assertIsInstance(err.root_cause, vibecodr.FetchJsonHttpError)
        self.assertEqual(err.recovery.capsule_id, "cap-1")
        self.assertEqual(err.recovery.uploaded_files, ("App.tsx",))
        self.assertEqual(err.recovery.failed_file, "b.ts")
        self.assertEqual(err.recovery.total_files, 3)
        self.assertTrue(err.recovery.can_retry_upload)
        self.assertFalse(err.recovery.can_retry_publish)
        self.assertEqual(platform.calls("publish"), [])

        # Resume: only the remaining two files are sent.
        resumed = _FakePlatform()
        progress = await self._publisher(resumed).retry_upload(
            "cap-1", files, err.recovery.uploaded_files, token="tok",
        )
        self.assertEqual(resumed.uploads, ["b.ts", "c.ts"])
        self.assertEqual(progress.uploaded_files, ("App.tsx", "b.ts", "c.ts"))
        self.assertEqual(progress.total_uploaded, 3)

    async def test_failed_retry_upload_reports_cumulative_progress(self):
        platform = _FakePlatform(upload_failures={2: httpx.Response(400, json={})})
        publisher = self._publisher(platform)

        with self.assertRaises(vibecodr.FileUploadError) as ctx:
            await publisher.retry_upload("cap-1", _files("a.ts", "b.ts", "c.ts", "d.ts"), ["a.ts"], token="tok")

        self.assertEqual(ctx.exception.recovery.uploaded_files, ("a.ts", "b.ts"))
        self.assertEqual(ctx.exception.recovery.failed_file, "c.ts")
        self.assertEqual(ctx.exception.recovery.total_files, 4)

    async def test_publish_failure_after_upload_is_retryable(self):
        platform = _FakePlatform(publish_failures=[httpx.Response(500, json={"error": "db"})])
        publisher = self._publisher(platform)

        with self.assertRaises(vibecodr.PublishFailed) as ctx:
            await publisher.publish("Demo", _files("App.tsx", "b.ts"), visibility="private", token="tok")

        recovery = ctx.exception.recovery
        self.assertTrue(recovery.can_retry_publish)
        self.assertTrue(recovery.all_files_uploaded)
        self.assertFalse(recovery.can_retry_upload)
        self.assertEqual(recovery.uploaded_files, ("App.tsx", "b.ts"))
        self.assertEqual(recovery.visibility, "private")
        self.assertIsInstance(ctx.exception.step_error, vibecodr.CapsulePublishError)

        result = await publisher.retry_publish("cap-1", "private", token="tok")
        self.assertEqual(result.post_id, "post-1")
        self.assertEqual(result.url, "https://vibecodr.space/player/post-1")
        self.assertEqual(len(platform.calls("upload")), 2)

    async def test_create_failure_is_not_resumable(self):
        platform = _FakePlatform(create_response=httpx.Response(200, json={"success": False}))
        publisher = self._publisher(platform)

        with self.assertRaises(vibecodr.PublishFailed) as ctx:
            await publisher.publish("Demo", _files("App.tsx"), token="tok")

        self.assertIsInstance(ctx.exception.step_error, vibecodr.CapsuleCreateError)
        self.assertIsNone(ctx.exception.recovery.capsule_id)
        self.assertFalse(ctx.exception.recovery.resumable)
        self.assertEqual(platform.calls("upload"), [])

    async def test_publish_response_without_post_id(self):
        platform = _FakePlatform(publish_failures=[httpx.Response(200, json={"ok": True})])
        publisher = self._publisher(platform)

        with self.assertRaises(vibecodr.PublishFailed) as ctx:
            await publisher.publish("Demo", _files("App.tsx"), token="tok")
        self.assertTrue(ctx.exception.recovery.can_retry_publish)

    async def test_rejected_token_is_refreshed_once(self):
        tmpdir = tempfile.mkdtemp(prefix="vibecodr_test_publish_auth_")
        self.addCleanup(shutil.rmtree, tmpdir, True)
        config = Path(tmpdir) / "cli.json"
        vibecodr.write_config_atomic(config, {
            "clerk": {"access_token": "id-1", "expires_at": int(time.time()) + 3600},
            "vibecodr": {"access_token": "plat-old", "expires_at": int(time.time()) + 3600},
        })
        platform = _FakePlatform(reject_token="plat-old")
        publisher = self._publisher(
            platform,
            credentials=lambda client: vibecodr.CredentialManager(vibecodr.CredentialStore(config), client),
        )

        result = await publisher.publish("Demo", _files("App.tsx"))

        self.assertEqual(result.post_id, "post-1")
        creates = platform.calls("create")
        self.assertEqual([r.headers["Authorization"] for r in creates], ["Bearer plat-old", "Bearer plat-new"])
        self.assertEqual(len(platform.calls("exchange")), 1)
        # later steps reuse the refreshed token
        self.assertEqual(platform.calls("upload")[0].headers["Authorization"], "Bearer plat-new")

    async def test_rejected_token_without_credentials_fails(self):
        platform = _FakePlatform(reject_token="tok")
        publisher = self._publisher(platform)

        with self.assertRaises(vibecodr.PublishFailed) as ctx:
            await publisher.publish("Demo", _files("App.tsx"), token="tok")
        self.assertTrue(vibecodr.is_auth_error(ctx.exception))
        self.assertEqual(len(platform.calls("create")), 1)

    async def test_untrusted_bases_refused_up_front(self):
        client = vibecodr.VibecodrClient(transport=httpx.MockTransport(_FakePlatform()))
        self.clients.append(client)
        with self.assertRaises(vibecodr.UntrustedOriginError):
            vibecodr.Publisher(client, api_base="https://evil.com")
        with self.assertRaises(vibecodr.UntrustedOriginError):
            vibecodr.Publisher(client, player_base="https://evil.com")

    async def test_staging_player_url(self):
        platform = _FakePlatform()
        publisher = self._publisher(
            platform, api_base="https://api.staging.vibecodr.space", player_base="https://staging.vibecodr.space/",
        )
        result = await publisher.publish("Demo", _files("App.tsx"), token="tok")
        self.assertEqual(result.url, "https://staging.vibecodr.space/player/post-1")

    async def test_preview_makes_no_requests(self):
        platform = _FakePlatform()
        publisher = self._publisher(platform)

        preview = publisher.preview("Demo", _files("App.tsx", "b.ts"), visibility="unlisted")

        self.assertEqual(preview.file_count, 2)
        self.assertEqual(preview.files, ("App.tsx", "b.ts"))
        self.assertEqual(preview.visibility, "unlisted")
        self.assertEqual(platform.requests, [])

    async def test_cancel_event_aborts_publish(self):
        platform = _FakePlatform()
        publisher = self._publisher(platform)
        cancel = asyncio.Event()
        cancel.set()

        with self.assertRaises(asyncio.CancelledError):
            await publisher.publish("Demo", _files("App.tsx"), token="tok", cancel_event=cancel)
        self.assertEqual(platform.requests, [])

    async def test_publish_requires_token_or_credentials(self):
        publisher = self._publisher(_FakePlatform())
        with self.assertRaises(vibecodr.PublishFailed) as ctx:
            await publisher.publish("Demo", _files("App.tsx"))
        self.assertIsInstance(ctx.exception.step_error, vibecodr.PublishValidationError)


class TestPlatformCalls(_PublisherTestCase):
    """The three single-call operations and their error translation."""

    async def test_upload_file_receipt_and_etag(self):
        platform = _FakePlatform()
        publisher = self._publisher(platform)

        receipt = await publisher.upload_file("tok", "cap-1", {"path": "index.html", "content": "<p>hi</p>"}, etag="abc")

        self.assertEqual(receipt, vibecodr.UploadReceipt(path="index.html", size=9, total_size=9, etag="e1"))
        sent = platform.calls("upload")[0]
        self.assertEqual(sent.headers["If-Match"], '"abc"')
        self.assertEqual(sent.headers["Content-Type"], "text/html")

    async def test_upload_rejects_unsafe_path_without_request(self):
        platform = _FakePlatform()
        publisher = self._publisher(platform)

        with self.assertRaises(vibecodr.PublishValidationError):
            await publisher.upload_file("tok", "cap-1", {"path": "/etc/passwd", "content": "x"})
        with self.assertRaises(vibecodr.ForbiddenFileName):
            await publisher.upload_file("tok", "cap-1", {"path": ".env", "content": "x"})
        self.assertEqual(platform.requests, [])

    async def test_upload_unexpected_response(self):
        platform = _FakePlatform(upload_failures={1: httpx.Response(200, json={"ok": False})})
        publisher = self._publisher(platform)

        with self.assertRaises(vibecodr.FileUploadError) as ctx:
            await publisher.upload_file("tok", "cap-1", {"path": "a.ts", "content": "x"})
        self.assertIn("ok=true", ctx.exception.message)

    async def test_security_block(self):
        body = {"code": "SECURITY_BLOCK", "reasons": ["eval detected"], "tags": ["eval"]}
        platform = _FakePlatform(upload_failures={1: httpx.Response(403, json=body)})
        publisher = self._publisher(platform)

        with self.assertRaises(vibecodr.SecurityBlockError) as ctx:
            await publisher.upload_file("tok", "cap-1", {"path": "a.ts", "content": "eval(x)"})

        self.assertEqual(ctx.exception.reasons, ("eval detected",))
        self.assertEqual(ctx.exception.tags, ("eval",))

    async def test_rate_limit_after_exhausted_retries(self):
        platform = _FakePlatform(upload_failures={
            n: httpx.Response(429, headers={"Retry-After": "7"}, json={"error": "slow down"}) for n in (1, 2, 3)
        })
        publisher = self._publisher(platform)

        with self.assertRaises(vibecodr.RateLimitError) as ctx:
            await publisher.upload_file("tok", "cap-1", {"path": "a.ts", "content": "x"})

        self.assertEqual(ctx.exception.retry_after_seconds, 7)
        self.assertEqual(self.sleeps, [7.0, 7.0])
        self.assertIsInstance(ctx.exception.__cause__, vibecodr.FetchRetryExhausted)

    async def test_create_capsule_requires_title(self):
        publisher = self._publisher(_FakePlatform())
        with self.assertRaises(vibecodr.PublishValidationError):
            await publisher.create_capsule("tok", "")

    async def test_publish_capsule_public_sends_no_body(self):
        platform = _FakePlatform()
        publisher = self._publisher(platform)

        post_id = await publisher.publish_capsule("tok", "cap-1")

        self.assertEqual(post_id, "post-1")
        sent = platform.calls("publish")[0]
        self.assertEqual(sent.content, b"")
        self.assertNotIn("Content-Type", sent.headers)


# ===========================================================================
# CLI
# ===========================================================================


class TestCli(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp(prefix="vibecodr_test_cli_")
        self.config = Path(self.tmpdir) / "cli.json"
        self.project = Path(self.tmpdir) / "vibe"
        self.project.mkdir()
        (self.project / "App.tsx").write_text("export default () => null", encoding="utf-8")

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def _main(self, *argv: str) -> tuple[int, str, str]:
        out, err = io.StringIO(), io.StringIO()
        code = 0
        with mock.patch("sys.stdout", out), mock.patch("sys.stderr", err):
            try:
                vibecodr.main(["--config", str(self.config), *argv])
            except SystemExit as exc:
                code = exc.code or 0
        return code, out.getvalue(), err.getvalue()

    def test_status_without_credentials(self):
        code, out, _ = self._main("status")
        self.assertEqual(code, 1)
        self.assertIn("Not authenticated", out)

    def test_status_with_credentials(self):
        vibecodr.write_config_atomic(self.config, {
            "vibecodr": {"access_token": "plat-secret", "expires_at": int(time.time()) + 600},
        })
        code, out, _ = self._main("status")
        self.assertEqual(code, 0)
        self.assertIn("Expires", out)
        self.assertNotIn("plat-secret", out)

    def test_dry_run_lists_files(self):
        code, out, _ = self._main("publish", str(self.project), "--title", "Demo", "--dry-run")
        self.assertEqual(code, 0)
        self.assertIn("Dry run", out)
        self.assertIn("App.tsx", out)

    def test_dry_run_reports_validation_error(self):
        (self.project / "package.json").write_text("{}", encoding="utf-8")
        code, _, err = self._main("publish", str(self.project), "--title", "Demo", "--dry-run")
        self.assertEqual(code, 1)
        self.assertIn("forbidden pattern", err)
        self.assertNotIn("Traceback", err)

    def test_publish_failure_prints_retry_hint(self):
        failure = vibecodr.PublishFailed(
            "Publish failed: boom",
            recovery=vibecodr.PublishRecovery(
                capsule_id="cap-9", uploaded_files=("App.tsx",), total_files=1,
                can_retry_publish=True, all_files_uploaded=True, visibility="unlisted",
            ),
        )
        with mock.patch.object(vibecodr, "cmd_publish", mock.AsyncMock(side_effect=failure)):
            code, _, err = self._main("publish", str(self.project), "--title", "Demo")
        self.assertEqual(code, 1)
        self.assertIn("vibecodr retry-publish cap-9 --visibility unlisted", err)

    def test_partial_upload_failure_prints_resume_hint(self):
        failure = vibecodr.PublishFailed(
            "Publish failed: boom",
            recovery=vibecodr.PublishRecovery(
                capsule_id="cap-9", uploaded_files=("App.tsx",), failed_file="b.ts", total_files=2,
                can_retry_upload=True,
            ),
        )
        with mock.patch.object(vibecodr, "cmd_publish", mock.AsyncMock(side_effect=failure)):
            code, _, err = self._main("publish", str(self.project), "--title", "Demo")
        self.assertEqual(code, 1)
        self.assertIn("Uploaded 1/2 files", err)
        self.assertIn("vibecodr retry-upload cap-9 <dir> --skip App.tsx", err)

    def test_no_command_prints_help(self):
        code, out, _ = self._main()
        self.assertEqual(code, 1)
        self.assertIn("usage", out.lower())


if __name__ == "__main__":
    unittest.main()
