"""Permission table tests"""
import pytest

from boxoffice.authz import Action, Actor, Domain, Role, authorize, can
from boxoffice.errors import NotAuthenticatedError, PermissionDeniedError


platform_owner = Actor("root", Role.OWNER)
org_support = Actor("sam", Role.SUPPORT, org_id="org-1")
org_finance = Actor("fin", Role.FINANCE, org_id="org-1")


class TestCan:
    def test_platform_owner_can_do_everything(self):
        for domain in Domain:
            for action in Action:
                assert can(platform_owner, domain, action)
                assert can(platform_owner, domain, action, "org-9")

    def test_org_scope(self):
        assert can(org_support, Domain.SETTLEMENT, Action.WRITE, "org-1")
        assert not can(org_support, Domain.SETTLEMENT, Action.WRITE, "org-2")
        # org-scoped actors never get platform-wide operations
        assert not can(org_support, Domain.ORDERS, Action.READ)

    def test_role_table(self):
        assert not can(org_support, Domain.ORDERS, Action.WRITE, "org-1")
        assert not can(org_finance, Domain.SETTLEMENT, Action.WRITE, "org-1")
        assert can(org_finance, Domain.ORDERS, Action.READ, "org-1")
        assert not can(Actor("a", Role.ADMIN), Domain.OPS, Action.WRITE)

    def test_domains_match_admin_surfaces(self):
        # public reads such as inventory need no domain
        assert {d.value for d in Domain} == {"orders", "settlement", "ops"}


class TestAuthorize:
    def test_anonymous(self):
        with pytest.raises(NotAuthenticatedError):
            authorize(None, Domain.ORDERS, Action.READ)

    def test_denied(self):
        with pytest.raises(PermissionDeniedError) as exc:
            authorize(org_finance, Domain.SETTLEMENT, Action.WRITE, "org-1")
        assert exc.value.code.value == "PERMISSION_DENIED"

    def test_allowed_returns_actor(self):
        assert authorize(org_support, Domain.ORDERS, Action.READ,
                         "org-1") is org_support


class TestSessionRoundTrip:
    def test_round_trip(self):
        assert Actor.from_session(org_support.to_session()) == org_support

    def test_bad_session_data(self):
        assert Actor.from_session(None) is None
        assert Actor.from_session({"username": "x", "role": "wizard"}) is None
        assert Actor.from_session({"role": "owner"}) is None
