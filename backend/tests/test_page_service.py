"""Tests for PageService: draft lifecycle, ownership and stale cleanup."""

import random
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from corner.core.auth import CallerIdentity
from corner.core.config import Settings
from corner.exceptions import AuthenticationError, ConflictError, ForbiddenError, ValidationError
from corner.models.page import Page
from corner.services.page_service import PageService
from tests.conftest import make_doc

TOKEN = "anon_abc12345-6789"


class _AlwaysRng(random.Random):
    """rng whose coin flip always lands on 'run the sweep'."""

    def random(self):
        return 0.0


def _age(db, page_id: str, minutes: int) -> None:
    db.execute(
        update(Page)
        .where(Page.id == page_id)
        .values(updated_at=datetime.now(timezone.utc) - timedelta(minutes=minutes))
    )
    db.commit()


@pytest.fixture()
def sweeping_config() -> Settings:
    return Settings(environment="development", cleanup_probability=1.0)


@pytest.fixture()
def service(db, config) -> PageService:
    return PageService(db, config=config)


class TestCreatePage:

    def test_authenticated_page_is_owned_by_user(self, service, caller):
        page = service.create_page(caller, title="Hello")
        assert page.owner_token == caller.user_id
        assert page.user_id == caller.user_id
        assert page.server_revision == 1
        assert page.draft_content["title"] == "Hello"

    def test_anonymous_page_is_owned_by_token(self, service):
        page = service.create_page(CallerIdentity(anonymous_token=TOKEN))
        assert page.owner_token == TOKEN
        assert page.user_id is None

    def test_caller_without_identity_rejected(self, service):
        with pytest.raises(AuthenticationError):
            service.create_page(CallerIdentity())


class TestOwnership:

    def test_owner_can_read(self, service, user_page, caller):
        assert service.get_page_for_caller(user_page.id, caller).id == user_page.id

    def test_other_user_forbidden(self, service, user_page, other_user):
        with pytest.raises(ForbiddenError):
            service.get_page_for_caller(user_page.id, CallerIdentity(user_id=other_user.id))

    def test_anonymous_token_cannot_read_claimed_page(self, db, service, user):
        db.add(Page(id="page_claimed", owner_token=TOKEN, user_id=user.id, draft_content={}))
        db.commit()
        with pytest.raises(ForbiddenError):
            service.get_page_for_caller("page_claimed", CallerIdentity(anonymous_token=TOKEN))


class TestSaveDraft:

    def test_save_with_matching_revision(self, service, user_page, caller):
        result = service.save_draft(user_page.id, make_doc(blocks=1, title="v2"), caller, base_server_revision=1)
        assert result.applied is True
        assert result.current_revision == 2
        assert result.page.title == "v2"
        assert result.page.draft_content["blocks"][0]["id"] == "b1"

    def test_stale_revision_conflicts_without_writing(self, db, service, user_page, caller):
        service.save_draft(user_page.id, make_doc(title="first"), caller, base_server_revision=1)

        with pytest.raises(ConflictError) as exc_info:
            service.save_draft(user_page.id, make_doc(title="second"), caller, base_server_revision=1)

        assert exc_info.value.current_revision == 2
        db.expire_all()
        assert db.get(Page, user_page.id).title == "first"

    def test_without_base_revision_uses_stored_revision(self, service, user_page, caller):
        service.save_draft(user_page.id, make_doc(), caller)
        result = service.save_draft(user_page.id, make_doc(), caller)
        assert result.current_revision == 3

    def test_background_is_stored_apart(self, service, user_page, caller):
        doc = make_doc(background={"mode": "solid", "solid": {"color": "#ffeedd"}})
        result = service.save_draft(user_page.id, doc, caller)
        assert "background" not in result.page.draft_content
        assert result.page.draft_background == {"mode": "solid", "solid": {"color": "#ffeedd"}}

    def test_invalid_document_rejected(self, service, user_page, caller):
        with pytest.raises(ValidationError):
            service.save_draft(user_page.id, {"version": 2}, caller)


class TestAnonymousDraft:

    def test_first_save_creates_page(self, service):
        page, created = service.save_anonymous_draft(make_doc(title="Pre-login"), TOKEN)
        assert created is True
        assert page.owner_token == TOKEN
        assert page.title == "Pre-login"
        assert page.server_revision == 1

    def test_later_saves_update_same_page(self, service):
        first, _ = service.save_anonymous_draft(make_doc(blocks=1), TOKEN)
        second, created = service.save_anonymous_draft(make_doc(blocks=3), TOKEN)
        assert created is False
        assert second.id == first.id
        assert second.server_revision == 2
        assert len(second.draft_content["blocks"]) == 3

    def test_token_required(self, service):
        with pytest.raises(ValidationError):
            service.save_anonymous_draft(make_doc(), "")


class TestResolvePageForPublish:

    def test_returns_existing_page(self, service, user_page, caller):
        assert service.resolve_page_for_publish(caller).id == user_page.id

    def test_creates_page_on_demand(self, service, caller):
        page = service.resolve_page_for_publish(caller)
        assert page.user_id == caller.user_id


class TestStaleCleanup:

    def test_cleanup_deletes_idle_anonymous_drafts(self, db, service, user_page):
        stale, _ = service.save_anonymous_draft(make_doc(), "anon_stale000-0001")
        fresh, _ = service.save_anonymous_draft(make_doc(), "anon_fresh000-0001")
        _age(db, stale.id, minutes=90)
        _age(db, user_page.id, minutes=90)

        result = service.cleanup_stale()

        assert result.deleted == 1
        assert result.remaining == 0
        assert result.max_age_minutes == 60
        db.expire_all()
        assert db.get(Page, stale.id) is None
        assert db.get(Page, fresh.id) is not None
        assert db.get(Page, user_page.id) is not None

    def test_custom_max_age(self, db, service):
        page, _ = service.save_anonymous_draft(make_doc(), TOKEN)
        _age(db, page.id, minutes=20)
        assert service.cleanup_stale(max_age_minutes=30).deleted == 0
        assert service.cleanup_stale(max_age_minutes=10).deleted == 1

    def test_anonymous_save_sweeps_when_coin_lands(self, db, sweeping_config):
        service = PageService(db, config=sweeping_config, rng=_AlwaysRng())
        stale, _ = service.save_anonymous_draft(make_doc(), "anon_stale000-0001")
        _age(db, stale.id, minutes=90)

        service.save_anonymous_draft(make_doc(), TOKEN)

        db.expire_all()
        assert db.get(Page, stale.id) is None

    def test_sweep_probability_zero_never_runs(self, db):
        config = Settings(environment="development", cleanup_probability=0.0)
        service = PageService(db, config=config, rng=_AlwaysRng())
        assert service.maybe_cleanup_stale() is None

    def test_sweep_failure_is_not_fatal(self, db, sweeping_config, monkeypatch):
        service = PageService(db, config=sweeping_config, rng=_AlwaysRng())

        def broken(max_age_minutes):
            raise RuntimeError("database went away")

        monkeypatch.setattr(service.pages, "delete_stale_anonymous", broken)

        page, created = service.save_anonymous_draft(make_doc(), TOKEN)

        assert created is True
        assert service.maybe_cleanup_stale() is None
