"""
Tests for EntitlementService, CapacityService and the denial audit logger.

Tests cover:
- Feature and capacity checks against stored subscriptions
- Fail-closed behaviour when the subscription store is unreachable
- Audit events for every denial, with optional aggregation
- Race-free capacity reservation with upgrade guidance
"""

import logging
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from edpsych.entitlements.audit import AccessDenialEvent, EntitlementAuditLogger
from edpsych.entitlements.errors import UnknownFeatureError
from edpsych.entitlements.models import (
    UNLIMITED,
    DenialReason,
    Feature,
    ResourceKind,
    SubscriptionStatus,
    Tier,
    UpgradeAction,
)
from edpsych.models.billing_event import BillingEvent, BillingEventType
from edpsych.models.feature_usage import FeatureUsage
from edpsych.models.subscription import OrganisationSubscription
from edpsych.repositories.capacity_repository import CapacityUsageRepository
from edpsych.repositories.subscription_repository import SubscriptionRepository
from edpsych.services.capacity_service import CapacityService
from edpsych.services.entitlement_service import EntitlementEvaluationError, EntitlementService


@pytest.fixture
def audit():
    return MagicMock(spec=EntitlementAuditLogger)


@pytest.fixture
def service(db_session, resolver, audit):
    return EntitlementService(db_session, resolver, audit_logger=audit)


@pytest.fixture
def subscribe(db_session, make_subscription):
    repo = SubscriptionRepository(db_session)

    def _subscribe(**overrides):
        return repo.save(make_subscription(**overrides))
    return _subscribe


@pytest.fixture
def broken_service(resolver, audit):
    """Service whose subscription store always fails."""
    service = EntitlementService(MagicMock(), resolver, audit_logger=audit)
    service._subscriptions = MagicMock()
    service._subscriptions.get_current.side_effect = OperationalError(
        "SELECT", {}, Exception("connection refused")
    )
    return service


def _logged_event(audit) -> AccessDenialEvent:
    audit.log_denial.assert_called_once()
    return audit.log_denial.call_args[0][0]


class TestCheckFeature:

    def test_included_feature_granted(self, service, subscribe, owner_id, audit):
        subscribe()
        result = service.check_feature(owner_id, "battle_royale")

        assert result.granted
        audit.log_denial.assert_not_called()

    def test_excluded_feature_denied_and_audited(self, service, subscribe, owner_id, audit):
        subscribe()
        result = service.check_feature(
            owner_id, Feature.SIMS_INTEGRATION,
            user_id="user_9", endpoint="/api/sims/sync", method="POST",
        )

        assert not result.granted
        assert result.reason == DenialReason.NOT_IN_TIER
        assert result.required_tier == Tier.MAT_LARGE

        event = _logged_event(audit)
        assert event.owner_id == owner_id
        assert event.feature_name == "sims_integration"
        assert event.reason == "not_in_tier"
        assert event.tier == "school_small"
        assert event.status == "active"
        assert event.required_tier == "mat_large"
        assert event.endpoint == "/api/sims/sync"

    def test_no_subscription(self, service, owner_id, audit):
        result = service.check_feature(owner_id, Feature.BATTLE_ROYALE)

        assert result.reason == DenialReason.NO_ACTIVE_SUBSCRIPTION
        assert result.action == UpgradeAction.SUBSCRIBE
        assert _logged_event(audit).tier is None

    def test_past_due_denied(self, service, subscribe, owner_id):
        subscribe(status=SubscriptionStatus.PAST_DUE)
        assert not service.check_feature(owner_id, Feature.BATTLE_ROYALE).granted

    def test_unrecognized_tier_denied(self, service, subscribe, db_session, owner_id, caplog):
        subscription = subscribe()
        db_session.query(OrganisationSubscription).filter_by(id=subscription.id).update(
            {"tier": "gold_2019"}
        )
        db_session.expire_all()

        with caplog.at_level(logging.ERROR, logger="edpsych.services.entitlement_service"):
            result = service.check_feature(owner_id, Feature.BATTLE_ROYALE)

        assert result.reason == DenialReason.UNRECOGNIZED_TIER
        assert "missing from the catalogue" in caplog.text

    def test_unknown_feature_raises(self, service, owner_id):
        with pytest.raises(UnknownFeatureError):
            service.check_feature(owner_id, "time_travel")


class TestFailClosed:

    def test_check_feature_denies(self, broken_service, owner_id, audit):
        result = broken_service.check_feature(owner_id, Feature.BATTLE_ROYALE)

        assert not result.granted
        assert result.reason == DenialReason.SUBSCRIPTION_UNAVAILABLE
        assert result.action == UpgradeAction.CONTACT_SALES
        assert _logged_event(audit).reason == "subscription_unavailable"

    def test_support_alert_emitted(self, broken_service, owner_id, caplog):
        with caplog.at_level(logging.CRITICAL, logger="edpsych.services.entitlement_service"):
            broken_service.check_feature(owner_id, Feature.BATTLE_ROYALE)

        alerts = [r for r in caplog.records if r.levelno == logging.CRITICAL]
        assert len(alerts) == 1
        assert alerts[0].alert_type == "entitlement_eval_failed"
        assert alerts[0].owner_id == owner_id
        assert alerts[0].error_type == "OperationalError"

    def test_session_rolled_back(self, broken_service, owner_id):
        broken_service.check_feature(owner_id, Feature.BATTLE_ROYALE)
        broken_service.db.rollback.assert_called()

    def test_check_capacity_denies(self, broken_service, owner_id):
        result = broken_service.check_capacity(owner_id, ResourceKind.USERS)

        assert not result.within_limit
        assert result.reason == DenialReason.SUBSCRIPTION_UNAVAILABLE
        assert result.limit == 0

    def test_reservation_fails_closed(self, resolver, audit, owner_id, caplog):
        capacity = CapacityService(MagicMock(), resolver, audit_logger=audit)
        capacity._subscriptions = MagicMock()
        capacity._subscriptions.get_current.side_effect = OperationalError(
            "SELECT", {}, Exception("connection refused")
        )

        with caplog.at_level(logging.CRITICAL, logger="edpsych.services.entitlement_service"):
            result = capacity.try_increment(owner_id, ResourceKind.STUDENTS, 5)

        assert not result.within_limit
        assert result.reason == DenialReason.SUBSCRIPTION_UNAVAILABLE
        assert result.requested == 5
        assert result.to_dict()["requested"] == 5
        capacity.db.rollback.assert_called()
        assert [r.alert_type for r in caplog.records if r.levelno == logging.CRITICAL] == [
            "entitlement_eval_failed"
        ]
        assert _logged_event(audit).reason == "subscription_unavailable"

    def test_release_failure_raises(self, resolver, audit, owner_id):
        capacity = CapacityService(MagicMock(), resolver, audit_logger=audit)
        capacity._capacity = MagicMock()
        capacity._capacity.release.side_effect = OperationalError("UPDATE", {}, Exception("timeout"))

        with pytest.raises(EntitlementEvaluationError):
            capacity.release(owner_id, ResourceKind.USERS)
        capacity.db.rollback.assert_called()

    def test_get_status_raises(self, broken_service, owner_id):
        with pytest.raises(EntitlementEvaluationError) as exc_info:
            broken_service.get_status(owner_id)
        assert exc_info.value.to_dict()["error"] == "ENTITLEMENT_EVAL_FAILED"
        assert isinstance(exc_info.value.cause, SQLAlchemyError)

    def test_missing_owner_raises(self, service):
        with pytest.raises(EntitlementEvaluationError):
            service.get_subscription("")


class TestCheckCapacity:

    def test_within_limit(self, service, subscribe, db_session, owner_id):
        subscribe()
        CapacityUsageRepository(db_session).increment_if_within(owner_id, ResourceKind.STUDENTS, 100, 100)

        result = service.check_capacity(owner_id, "students")
        assert result.within_limit
        assert result.display == "100/100 students"
        assert result.remaining == 0

    def test_over_limit_audited(self, service, subscribe, db_session, owner_id, audit):
        subscribe()
        CapacityUsageRepository(db_session).increment_if_within(
            owner_id, ResourceKind.STUDENTS, 101, UNLIMITED
        )

        result = service.check_capacity(owner_id, ResourceKind.STUDENTS)
        assert not result.within_limit
        assert result.required_tier == Tier.SCHOOL_MEDIUM

        event = _logged_event(audit)
        assert event.feature_name == "capacity:students"
        assert event.current == 101
        assert event.limit == 100

    def test_no_usage_row_counts_as_zero(self, service, subscribe, owner_id):
        subscribe()
        assert service.check_capacity(owner_id, ResourceKind.SCHOOLS).current == 0


class TestStatus:

    def test_active_summary(self, service, subscribe, owner_id):
        subscribe()
        summary = service.get_status(owner_id)

        assert summary.is_entitled
        assert summary.tier_name == "School Small"
        assert Feature.BATTLE_ROYALE in summary.available_features
        assert Feature.SIMS_INTEGRATION not in summary.available_features
        assert set(summary.capacity) == set(ResourceKind)

        data = summary.to_dict()
        assert data["subscription"]["tier"] == "school_small"
        assert data["capacity"]["users"]["limit"] == 10

    def test_no_subscription_summary(self, service, owner_id):
        summary = service.get_status(owner_id)
        assert summary.subscription is None
        assert not summary.is_entitled
        assert summary.available_features == []

    def test_past_due_lists_no_features(self, service, subscribe, owner_id):
        subscribe(status=SubscriptionStatus.PAST_DUE)
        summary = service.get_status(owner_id)

        assert summary.tier_name == "School Small"
        assert not summary.is_entitled
        assert summary.available_features == []


class TestFeatureUsage:

    def test_records_usage(self, service, db_session, owner_id):
        assert service.record_feature_usage(owner_id, "battle_royale", user_id="u1", metadata={"round": 2})

        row = db_session.query(FeatureUsage).filter_by(owner_id=owner_id).one()
        assert row.feature == "battle_royale"
        assert row.extra_metadata == {"round": 2}

    def test_store_failure_is_not_raised(self, resolver, audit, owner_id):
        db = MagicMock()
        db.commit.side_effect = SQLAlchemyError("disk full")
        service = EntitlementService(db, resolver, audit_logger=audit)

        assert service.record_feature_usage(owner_id, Feature.BATTLE_ROYALE) is False
        db.rollback.assert_called_once()


class TestCapacityService:

    @pytest.fixture
    def capacity(self, db_session, resolver, audit):
        return CapacityService(db_session, resolver, audit_logger=audit)

    def test_reserve_up_to_cap(self, capacity, subscribe, owner_id, audit):
        subscribe()

        result = capacity.try_increment(owner_id, ResourceKind.USERS, 10)
        assert result.within_limit
        assert result.current == 10
        audit.log_denial.assert_not_called()

    def test_reserve_beyond_cap(self, capacity, subscribe, owner_id, audit):
        subscribe()
        capacity.try_increment(owner_id, "students", 100)

        result = capacity.try_increment(owner_id, "students", 1)

        assert not result.within_limit
        assert result.current == 100
        assert result.reason == DenialReason.LIMIT_EXCEEDED
        assert result.required_tier == Tier.SCHOOL_MEDIUM
        assert result.requested == 1
        assert result.to_dict()["requested"] == 1
        assert _logged_event(audit).feature_name == "capacity:students"

    def test_override_replaces_tier_cap(self, capacity, subscribe, owner_id):
        subscribe(max_users=UNLIMITED, max_students=20)

        assert capacity.try_increment(owner_id, ResourceKind.USERS, 1000).within_limit
        assert not capacity.try_increment(owner_id, ResourceKind.STUDENTS, 21).within_limit

    def test_no_subscription(self, capacity, owner_id, db_session):
        result = capacity.try_increment(owner_id, ResourceKind.USERS)

        assert result.reason == DenialReason.NO_ACTIVE_SUBSCRIPTION
        assert CapacityUsageRepository(db_session).get(owner_id) is None

    def test_release(self, capacity, subscribe, owner_id):
        subscribe()
        capacity.try_increment(owner_id, ResourceKind.USERS, 4)

        assert capacity.release(owner_id, ResourceKind.USERS, 3) == 1
        assert capacity.release(owner_id, ResourceKind.USERS, 3) == 0


class TestAuditLogger:

    def _event(self, owner_id, feature="sims_integration"):
        return AccessDenialEvent(owner_id=owner_id, feature_name=feature, reason="not_in_tier")

    def test_logs_to_audit_channel(self, owner_id, caplog):
        with caplog.at_level(logging.WARNING, logger="edpsych.entitlements.audit"):
            assert EntitlementAuditLogger().log_denial(self._event(owner_id))

        record = next(r for r in caplog.records if r.name == "edpsych.entitlements.audit")
        assert record.audit_data["owner_id"] == owner_id
        assert record.event_type == "access_denied"

    def test_aggregation_window(self, owner_id):
        audit = EntitlementAuditLogger(aggregation_window_seconds=60)

        assert audit.log_denial(self._event(owner_id))
        assert not audit.log_denial(self._event(owner_id))
        assert audit.log_denial(self._event(owner_id, feature="parent_portal"))

    def test_no_aggregation_by_default(self, owner_id):
        audit = EntitlementAuditLogger()
        assert audit.log_denial(self._event(owner_id))
        assert audit.log_denial(self._event(owner_id))

    def test_persists_billing_event(self, db_session, owner_id):
        factory = sessionmaker(bind=db_session.get_bind())
        audit = EntitlementAuditLogger(db_session_factory=factory)

        event = self._event(owner_id)
        audit.log_denial(event)

        row = db_session.query(BillingEvent).filter_by(owner_id=owner_id).one()
        assert row.id == event.event_id
        assert row.event_type == BillingEventType.ACCESS_DENIED
        assert row.extra_metadata["feature_name"] == "sims_integration"

    def test_persist_failure_is_logged(self, owner_id, caplog):
        session = MagicMock()
        session.commit.side_effect = SQLAlchemyError("read only")
        audit = EntitlementAuditLogger(db_session_factory=lambda: session)

        with caplog.at_level(logging.ERROR, logger="edpsych.entitlements.audit"):
            assert audit.log_denial(self._event(owner_id))

        session.rollback.assert_called_once()
        session.close.assert_called_once()
        assert "Failed to write audit event" in caplog.text
