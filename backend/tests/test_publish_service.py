"""Tests for PublishOrchestrator: the upload-before-commit publish pipeline.

Runs the orchestrator directly against the test database with an in-memory
object store. Concurrent writers are simulated by bumping the row's revision
in between the orchestrator's read and its CAS.
"""

import json
import threading
from concurrent.futures import Future, ThreadPoolExecutor

import httpx
import pytest
from botocore.exceptions import ReadTimeoutError
from botocore.stub import Stubber
from sqlalchemy import update

from corner.core.auth import CallerIdentity
from corner.core.config import Settings
from corner.database import SessionLocal
from corner.exceptions import ConflictError, ForbiddenError, StorageUnavailableError, ValidationError
from corner.models.page import Page
from corner.repositories import PageRepository
from corner.services.artifact_publisher import ArtifactPublisher, S3ObjectStore, StorageUploadError
from corner.services.cache_invalidator import CacheInvalidator
from corner.services.page_service import PageService
from corner.services.publish_service import DEGRADED_NOT_CONFIGURED_WARNING, PublishOrchestrator
from tests.conftest import PUBLIC_BASE_URL, RaisingS3Client, make_doc, s3_client

ARTIFACT_KEY = "pages/user-ab12cd34/index.html"


def _at_revision(db, page: Page, revision: int) -> Page:
    page.server_revision = revision
    db.commit()
    return page


def _reload(db, page_id: str) -> Page:
    db.expire_all()
    return PageRepository(db).get_by_id(page_id)


def _race(orchestrator: PublishOrchestrator, db, times: int, slug: str = None) -> list:
    """Make a concurrent writer win the CAS before each of the first *times* attempts."""
    original = orchestrator.pages.cas_update
    calls = []

    def racing(page_id, expected_revision, patch):
        if len(calls) < times:
            values = {"server_revision": Page.server_revision + 1}
            if slug:
                values["slug"] = slug
            db.execute(update(Page).where(Page.id == page_id).values(**values))
            db.commit()
        calls.append(expected_revision)
        return original(page_id, expected_revision, patch)

    orchestrator.pages.cas_update = racing
    return calls


def _failing_s3(exc: Exception = None, status: int = 500) -> S3ObjectStore:
    """An S3 store whose writes raise *exc*, or answer with an error *status*."""
    if exc is not None:
        client = RaisingS3Client(exc)
    else:
        client = s3_client()
        stubber = Stubber(client)
        stubber.add_client_error("put_object", service_error_code="InternalError", http_status_code=status)
        stubber.activate()
    return S3ObjectStore("https://acct.r2.test", "bucket", "AKIDEXAMPLE", "secret", client=client)


@pytest.fixture()
def orchestrator(db, publisher, config) -> PublishOrchestrator:
    return PublishOrchestrator(db, publisher, config=config)


class TestPublishHappyPath:

    def test_first_publish_assigns_slug_and_revision(self, db, orchestrator, user_page, caller, object_store):
        _at_revision(db, user_page, 3)

        result = orchestrator.publish(user_page.id, make_doc(blocks=2), 3, caller)

        assert result.success is True
        assert result.slug == "user-ab12cd34"
        assert result.published_revision == 4
        assert result.server_revision == 4
        assert result.retried is False
        assert result.warnings == []
        assert result.storage_key == ARTIFACT_KEY
        assert result.public_url == f"{PUBLIC_BASE_URL}/{ARTIFACT_KEY}"

        page = _reload(db, user_page.id)
        assert page.is_published is True
        assert page.slug == "user-ab12cd34"
        assert page.server_revision == 4
        assert page.published_revision == 4
        assert page.published_at is not None
        assert len(page.published_content["blocks"]) == 2
        assert page.storage_key == ARTIFACT_KEY

    def test_artifact_is_uploaded_as_html(self, orchestrator, user_page, caller, object_store):
        orchestrator.publish(user_page.id, make_doc(title="Hello <there>"), 1, caller)

        stored = object_store.objects[ARTIFACT_KEY]
        assert stored.content_type.startswith("text/html")
        assert b"Hello &lt;there&gt;" in stored.data
        assert "published-at" in stored.metadata

    def test_republish_reuses_slug(self, db, orchestrator, user_page, caller):
        first = orchestrator.publish(user_page.id, make_doc(), 1, caller)
        second = orchestrator.publish(user_page.id, make_doc(blocks=1), first.server_revision, caller)

        assert second.slug == first.slug
        assert second.published_revision == 3
        assert second.slug_allocation is None

    def test_slug_collision_gets_numeric_suffix(self, db, orchestrator, user_page, caller, other_user):
        db.add(Page(
            id="page_squatter",
            owner_token=other_user.id,
            user_id=other_user.id,
            draft_content={},
            slug="user-ab12cd34",
            server_revision=1,
            is_published=True,
        ))
        db.commit()

        result = orchestrator.publish(user_page.id, make_doc(), 1, caller)

        assert result.slug == "user-ab12cd34-2"
        assert _reload(db, "page_squatter").slug == "user-ab12cd34"


class TestPublishConflicts:

    def test_single_conflict_is_absorbed_by_retry(self, db, orchestrator, user_page, caller):
        _at_revision(db, user_page, 4)
        calls = _race(orchestrator, db, times=1)

        result = orchestrator.publish(user_page.id, make_doc(), 4, caller)

        assert calls == [4, 5]
        assert result.retried is True
        assert result.server_revision == 6
        assert result.published_revision == 6
        assert _reload(db, user_page.id).is_published is True

    def test_retry_reuses_uploaded_artifact(self, db, orchestrator, user_page, caller):
        uploads = []
        original_put = orchestrator.publisher.store.put

        def counting_put(*args, **kwargs):
            uploads.append(args[0])
            return original_put(*args, **kwargs)

        orchestrator.publisher.store.put = counting_put
        _race(orchestrator, db, times=1)

        orchestrator.publish(user_page.id, make_doc(), 1, caller)

        assert uploads == [ARTIFACT_KEY]

    def test_second_conflict_is_surfaced(self, db, orchestrator, user_page, caller):
        calls = _race(orchestrator, db, times=2)

        with pytest.raises(ConflictError) as exc_info:
            orchestrator.publish(user_page.id, make_doc(), 1, caller)

        assert len(calls) == 2
        assert exc_info.value.current_revision == 3
        body = exc_info.value.to_dict()
        assert body["success"] is False
        assert body["conflict"] is True
        assert body["current_revision"] == 3

        page = _reload(db, user_page.id)
        assert page.is_published is False
        assert page.published_revision is None

    def test_concurrent_publish_under_other_slug_is_a_conflict(self, db, orchestrator, user_page, caller):
        calls = _race(orchestrator, db, times=1, slug="someone-else")

        with pytest.raises(ConflictError):
            orchestrator.publish(user_page.id, make_doc(), 1, caller)

        assert len(calls) == 1
        assert _reload(db, user_page.id).slug == "someone-else"

    def test_stale_base_revision_retries_against_current(self, db, orchestrator, user_page, caller):
        _at_revision(db, user_page, 9)

        result = orchestrator.publish(user_page.id, make_doc(), 2, caller)

        assert result.retried is True
        assert result.server_revision == 10


class TestUploadBeforeCommit:

    def test_upload_timeout_leaves_row_untouched(self, db, user_page, caller, config):
        _at_revision(db, user_page, 3)
        store = _failing_s3(exc=ReadTimeoutError(endpoint_url="https://acct.r2.test"))
        orchestrator = PublishOrchestrator(
            db, ArtifactPublisher(store, public_base_url=PUBLIC_BASE_URL), config=config
        )

        with pytest.raises(StorageUnavailableError):
            orchestrator.publish(user_page.id, make_doc(), 3, caller)

        page = _reload(db, user_page.id)
        assert page.server_revision == 3
        assert page.is_published is False
        assert page.published_revision is None
        assert page.published_content is None
        assert page.slug is None

    def test_upload_error_status_is_fatal(self, db, user_page, caller, config):
        orchestrator = PublishOrchestrator(
            db, ArtifactPublisher(_failing_s3(status=403), public_base_url=PUBLIC_BASE_URL), config=config
        )

        with pytest.raises(StorageUnavailableError):
            orchestrator.publish(user_page.id, make_doc(), 1, caller)

        assert _reload(db, user_page.id).server_revision == 1

    def test_unconfigured_storage_reports_missing_variables(self, db, user_page, caller, config):
        orchestrator = PublishOrchestrator(db, ArtifactPublisher(None), config=config)

        with pytest.raises(StorageUnavailableError) as exc_info:
            orchestrator.publish(user_page.id, make_doc(), 1, caller)

        assert "S3_BUCKET" in exc_info.value.details["missing"]
        assert _reload(db, user_page.id).is_published is False


class TestDegradedMode:

    @pytest.fixture()
    def degraded_config(self) -> Settings:
        return Settings(environment="development", allow_degraded_publish=True)

    def test_publishes_without_storage_with_warning(self, db, user_page, caller, degraded_config):
        orchestrator = PublishOrchestrator(db, ArtifactPublisher(None), config=degraded_config)

        result = orchestrator.publish(user_page.id, make_doc(), 1, caller)

        assert result.warnings == [DEGRADED_NOT_CONFIGURED_WARNING]
        assert result.storage_key is None
        assert result.public_url == "/api/public/user-ab12cd34"
        page = _reload(db, user_page.id)
        assert page.is_published is True
        assert page.storage_key is None

    def test_upload_failure_is_fatal_even_when_degraded_allowed(self, db, user_page, caller, degraded_config):
        publisher = ArtifactPublisher(_failing_s3(status=500), public_base_url=PUBLIC_BASE_URL)
        orchestrator = PublishOrchestrator(db, publisher, config=degraded_config)

        with pytest.raises(StorageUnavailableError):
            orchestrator.publish(user_page.id, make_doc(), 1, caller)

        assert _reload(db, user_page.id).is_published is False

    def test_failed_republish_keeps_stored_and_committed_versions_aligned(
        self, db, user_page, caller, degraded_config, publisher, object_store, monkeypatch
    ):
        orchestrator = PublishOrchestrator(db, publisher, config=degraded_config)
        first = orchestrator.publish(user_page.id, make_doc(title="VERSION-ONE"), 1, caller)

        def broken_put(*args, **kwargs):
            raise StorageUploadError("Storage upload failed: 500 InternalError")

        monkeypatch.setattr(object_store, "put", broken_put)
        with pytest.raises(StorageUnavailableError):
            orchestrator.publish(user_page.id, make_doc(title="VERSION-TWO"), first.server_revision, caller)

        assert b"VERSION-ONE" in object_store.get(ARTIFACT_KEY)
        page = _reload(db, user_page.id)
        assert page.server_revision == first.server_revision
        assert page.published_revision == first.published_revision
        assert page.published_content["title"] == "VERSION-ONE"
        assert page.storage_key == ARTIFACT_KEY

    def test_degraded_defaults_off_in_production(self):
        assert Settings(environment="production").degraded_publish_allowed() is False
        assert Settings(environment="development").degraded_publish_allowed() is True


class TestPublishValidation:

    def test_too_many_blocks_rejected_before_side_effects(self, db, user_page, caller, publisher, object_store):
        config = Settings(environment="development", allow_degraded_publish=False, max_blocks=2)
        orchestrator = PublishOrchestrator(db, publisher, config=config)

        with pytest.raises(ValidationError) as exc_info:
            orchestrator.publish(user_page.id, make_doc(blocks=3), 1, caller)

        assert exc_info.value.details["field"] == "blocks"
        assert object_store.objects == {}
        assert _reload(db, user_page.id).server_revision == 1

    def test_malformed_document_rejected(self, orchestrator, user_page, caller):
        with pytest.raises(ValidationError):
            orchestrator.publish(user_page.id, {"blocks": "not a list"}, 1, caller)

    def test_unsafe_link_rejected(self, orchestrator, user_page, caller):
        doc = make_doc(blocks=0)
        doc["blocks"] = [{
            "id": "l1", "type": "link", "x": 0, "y": 0, "width": 10, "height": 10,
            "content": {"label": "x", "url": "javascript:alert(1)"},
        }]
        with pytest.raises(ValidationError):
            orchestrator.publish(user_page.id, doc, 1, caller)

    def test_rendered_artifact_over_limit_rejected(self, db, user_page, caller, publisher, object_store):
        config = Settings(environment="development", allow_degraded_publish=False, max_artifact_bytes=100)
        orchestrator = PublishOrchestrator(db, publisher, config=config)

        with pytest.raises(ValidationError):
            orchestrator.publish(user_page.id, make_doc(), 1, caller)

        assert object_store.objects == {}

    def test_non_owner_cannot_publish(self, orchestrator, user_page, other_user):
        intruder = CallerIdentity(user_id=other_user.id)
        with pytest.raises(ForbiddenError):
            orchestrator.publish(user_page.id, make_doc(), 1, intruder)


class TestSnapshotIsolation:

    def test_draft_edits_do_not_touch_published_snapshot(self, db, orchestrator, user_page, caller, config):
        published = orchestrator.publish(user_page.id, make_doc(blocks=2, title="Live"), 1, caller)

        PageService(db, config=config).save_draft(
            user_page.id, make_doc(blocks=5, title="Draft"), caller, published.server_revision
        )

        page = _reload(db, user_page.id)
        assert page.title == "Draft"
        assert len(page.draft_content["blocks"]) == 5
        assert len(page.published_content["blocks"]) == 2
        assert page.published_content["title"] == "Live"
        assert page.published_revision == published.published_revision
        assert page.server_revision == published.server_revision + 1
        assert page.has_unpublished_changes is True


class _HangingInvalidator:
    timeout = 0.01
    is_configured = True

    def submit(self, slug):
        return Future()


class TestInvalidationWarnings:

    def _webhook_invalidator(self, handler) -> CacheInvalidator:
        return CacheInvalidator(
            webhook_url="https://purge.test/hook",
            webhook_secret="hook-secret",
            public_base_url=PUBLIC_BASE_URL,
            app_origins=["https://corner.test"],
            transport=httpx.MockTransport(handler),
        )

    def test_successful_purge_adds_no_warning(self, db, publisher, config, user_page, caller):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={"ok": True})

        invalidator = self._webhook_invalidator(handler)
        try:
            orchestrator = PublishOrchestrator(db, publisher, invalidator=invalidator, config=config)
            result = orchestrator.publish(user_page.id, make_doc(), 1, caller)
        finally:
            invalidator.shutdown()

        assert result.warnings == []
        assert seen == [{"urls": [
            f"{PUBLIC_BASE_URL}/{ARTIFACT_KEY}",
            "https://corner.test/u/user-ab12cd34",
        ]}]

    def test_purge_failure_becomes_warning(self, db, publisher, config, user_page, caller):
        invalidator = self._webhook_invalidator(lambda request: httpx.Response(500, text="boom"))
        try:
            orchestrator = PublishOrchestrator(db, publisher, invalidator=invalidator, config=config)
            result = orchestrator.publish(user_page.id, make_doc(), 1, caller)
        finally:
            invalidator.shutdown()

        assert result.success is True
        assert any("Cache purge failed" in w for w in result.warnings)
        assert _reload(db, user_page.id).is_published is True

    def test_purge_that_never_finishes_becomes_warning(self, db, publisher, config, user_page, caller):
        orchestrator = PublishOrchestrator(
            db, publisher, invalidator=_HangingInvalidator(), config=config, invalidation_timeout=0.05
        )

        result = orchestrator.publish(user_page.id, make_doc(), 1, caller)

        assert len(result.warnings) == 1
        assert "did not finish" in result.warnings[0]
        assert _reload(db, user_page.id).is_published is True


class TestConcurrentPublishers:
    """Publishers on separate threads and sessions, coordinating only through the revision."""

    WORKERS = 4

    def _publish_from_thread(self, barrier, publisher, config, page_id, caller, n):
        db = SessionLocal()
        try:
            orchestrator = PublishOrchestrator(db, publisher, config=config)
            barrier.wait(timeout=10)
            try:
                result = orchestrator.publish(page_id, make_doc(blocks=n), 1, caller)
            except ConflictError as e:
                return ("conflict", e.details["current_revision"])
            return ("ok", result.server_revision, result.published_revision)
        finally:
            db.close()

    def test_every_writer_either_commits_one_revision_or_conflicts(
        self, db, publisher, config, user_page, caller, object_store
    ):
        barrier = threading.Barrier(self.WORKERS)
        with ThreadPoolExecutor(max_workers=self.WORKERS) as pool:
            futures = [
                pool.submit(self._publish_from_thread, barrier, publisher, config, user_page.id, caller, n)
                for n in range(1, self.WORKERS + 1)
            ]
            outcomes = [f.result(timeout=30) for f in futures]

        committed = sorted(o[1] for o in outcomes if o[0] == "ok")
        assert committed
        assert all(o[0] in ("ok", "conflict") for o in outcomes)
        # Each accepted publish advanced the revision by exactly one.
        assert committed == list(range(2, 2 + len(committed)))
        assert all(o[1] == o[2] for o in outcomes if o[0] == "ok")

        page = _reload(db, user_page.id)
        assert page.server_revision == 1 + len(committed)
        assert page.published_revision == page.server_revision
        assert page.slug == "user-ab12cd34"
        assert list(object_store.objects) == [ARTIFACT_KEY]
