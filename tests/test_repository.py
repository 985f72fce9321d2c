"""Tests for the storage repository."""

from __future__ import annotations

from datetime import date, timedelta

import pytest
from conftest import ORG_A, ORG_B, add_credential
from sqlalchemy.exc import IntegrityError as SQLIntegrityError

from dealerledger.errors import RecordNotFound
from dealerledger.storage import FortnoxCredential
from dealerledger.storage.models import utcnow


class TestOrganizations:
    def test_user_organization(self, repository) -> None:
        assert repository.get_user_organization_id("user-1") == ORG_A
        assert repository.get_user_organization_id("user-3") == ORG_B

    def test_unknown_user(self, repository) -> None:
        with pytest.raises(RecordNotFound):
            repository.get_user_organization_id("ghost")

    def test_unknown_item(self, repository) -> None:
        with pytest.raises(RecordNotFound):
            repository.get_inventory_item("missing")


class TestStates:
    def test_consume_once(self, repository) -> None:
        row = repository.add_state("s-1", "user-1")
        assert repository.consume_state(row.id, utcnow()) is True
        assert repository.consume_state(row.id, utcnow()) is False
        assert repository.get_state("s-1").used_at is not None

    def test_purge(self, repository) -> None:
        repository.add_state("s-1", "user-1")
        assert repository.purge_states_before(utcnow() - timedelta(minutes=10)) == 0
        assert repository.purge_states_before(utcnow() + timedelta(seconds=1)) == 1
        assert repository.get_state("s-1") is None


class TestCredentials:
    def test_single_active_per_user(self, repository) -> None:
        first = add_credential(repository, oauth_code="fp-1")
        second = add_credential(repository, oauth_code="fp-2")
        assert repository.get_credential(first.id).is_active is False
        assert repository.active_credential_for_user("user-1").id == second.id

    def test_code_fingerprint_unique(self, repository) -> None:
        add_credential(repository, oauth_code="fp-1")
        assert repository.code_fingerprint_used("fp-1")
        with pytest.raises(SQLIntegrityError):
            add_credential(repository, user_id="user-2", oauth_code="fp-1")
        # Failed insert rolled back the deactivation as well
        assert repository.active_credential_for_user("user-1") is not None

    def test_active_credential_for_organization(self, repository) -> None:
        add_credential(repository, user_id="user-1", oauth_code="fp-1")
        latest = add_credential(repository, user_id="user-2", oauth_code="fp-2")
        assert repository.active_credential_for_organization(ORG_A).id == latest.id
        assert repository.active_credential_for_organization(ORG_B) is None

    def test_deactivate(self, repository) -> None:
        add_credential(repository)
        assert repository.deactivate_credentials("user-1") == 1
        assert repository.active_credential_for_user("user-1") is None
        assert len(repository.list_credentials()) == 1

    def test_one_active_credential_per_user(self, repository) -> None:
        add_credential(repository, oauth_code="fp-1")
        with pytest.raises(SQLIntegrityError):
            with repository.database.session() as session, session.begin():
                session.add(FortnoxCredential(
                    user_id="user-1", organization_id=ORG_A, access_token="other", is_active=True,
                ))
        # Inactive history rows are unrestricted
        with repository.database.session() as session, session.begin():
            session.add(FortnoxCredential(user_id="user-1", organization_id=ORG_A, access_token="old"))
        assert len(repository.list_credentials()) == 2


class TestLogs:
    def test_error_log(self, repository) -> None:
        repository.log_error("user-1", "refresh_token_error", "rejected", {"status": 400})
        errors = repository.list_errors("user-1")
        assert errors[0].message == "rejected"
        assert errors[0].context == {"status": 400}

    def test_correction_record(self, repository) -> None:
        repository.add_correction(
            user_id="user-1",
            original_series="A",
            original_number="42",
            correction_series="A",
            correction_number="43",
            correction_date=date(2024, 6, 1),
        )
        [record] = repository.list_corrections("user-1")
        assert record.correction_date == date(2024, 6, 1)
