from types import SimpleNamespace

import pytest

from streamvault.access.authorization import AccessAction, AuthorizationEngine, DecisionCache
from streamvault.access.identity import CAPABILITY_MANAGE_FILES, build_directory
from streamvault.core.errors import AuthorizationDenied


def _asset(collection_id: str = "course-101", owner_id: str = "owner-1", asset_id: str = "asset-1"):
    return SimpleNamespace(id=asset_id, owner_id=owner_id, collection_id=collection_id)


@pytest.mark.parametrize(
    ("caller_id", "action", "allowed", "reason"),
    [
        ("owner-1", "manage", True, "owner"),
        ("admin-1", "download", True, "admin"),
        ("outsider", "view", False, "not_enrolled"),
        ("student-1", "view", True, "enrolled"),
        ("student-1", "download", False, "insufficient_permissions"),
        ("student-1", "manage", False, "insufficient_permissions"),
        ("assistant-1", "download", True, "manage_files"),
        ("assistant-1", "manage", False, "insufficient_permissions"),
        ("teacher-1", "download", True, "teacher"),
        ("teacher-1", "manage", True, "collection_manager"),
    ],
)
def test_decision_precedence(identity, caller_id: str, action: str, allowed: bool, reason: str) -> None:
    engine = AuthorizationEngine(identity)

    decision = engine.decide(action, _asset(), caller_id)

    assert decision.allowed is allowed
    assert decision.reason == reason
    assert decision.message


def test_hidden_collection_requires_viewhidden(identity) -> None:
    engine = AuthorizationEngine(identity)
    asset = _asset(collection_id="course-hidden")

    denied = engine.decide(AccessAction.VIEW, asset, "student-1")
    assert denied.allowed is False
    assert denied.reason == "collection_hidden"
    assert engine.decide(AccessAction.VIEW, asset, "teacher-1").allowed is True


def test_unknown_collection_is_denied_before_enrollment(identity) -> None:
    engine = AuthorizationEngine(identity)
    decision = engine.decide(AccessAction.VIEW, _asset(collection_id="missing"), "student-1")
    assert decision.reason == "invalid_collection"

    owner = engine.decide(AccessAction.VIEW, _asset(collection_id="missing"), "owner-1")
    assert owner.allowed is True


def test_raise_if_denied(identity) -> None:
    engine = AuthorizationEngine(identity)
    with pytest.raises(AuthorizationDenied) as excinfo:
        engine.decide(AccessAction.DOWNLOAD, _asset(), "student-1").raise_if_denied()
    assert excinfo.value.reason == "insufficient_permissions"


def test_cache_serves_stale_decision_until_invalidated(identity, clock) -> None:
    cache = DecisionCache(ttl_seconds=300, clock=clock)
    engine = AuthorizationEngine(identity, cache=cache)
    asset = _asset()

    assert engine.decide(AccessAction.DOWNLOAD, asset, "student-1").allowed is False
    identity.grant("course-101", "student-1", CAPABILITY_MANAGE_FILES)
    assert engine.decide(AccessAction.DOWNLOAD, asset, "student-1").allowed is False

    engine.invalidate_caller("student-1")
    assert engine.decide(AccessAction.DOWNLOAD, asset, "student-1").allowed is True


def test_cache_entries_expire_after_ttl(identity, clock) -> None:
    cache = DecisionCache(ttl_seconds=60, clock=clock)
    engine = AuthorizationEngine(identity, cache=cache)
    asset = _asset()

    engine.decide(AccessAction.VIEW, asset, "student-1")
    identity.unenroll("course-101", "student-1")
    assert engine.decide(AccessAction.VIEW, asset, "student-1").allowed is True

    clock.advance(60)
    assert engine.decide(AccessAction.VIEW, asset, "student-1").allowed is False


def test_manage_decisions_bypass_cache(identity, clock) -> None:
    cache = DecisionCache(ttl_seconds=300, clock=clock)
    engine = AuthorizationEngine(identity, cache=cache)
    asset = _asset()

    assert engine.decide(AccessAction.MANAGE, asset, "teacher-1").allowed is True
    identity.unenroll("course-101", "teacher-1")
    assert engine.decide(AccessAction.MANAGE, asset, "teacher-1").allowed is False
    assert len(cache) == 0


def test_zero_ttl_disables_cache(identity, clock) -> None:
    cache = DecisionCache(ttl_seconds=0, clock=clock)
    engine = AuthorizationEngine(identity, cache=cache)
    engine.decide(AccessAction.VIEW, _asset(), "student-1")
    assert len(cache) == 0


def test_cache_rejects_out_of_range_ttl(clock) -> None:
    with pytest.raises(ValueError):
        DecisionCache(ttl_seconds=3601, clock=clock)


def test_invalidate_asset_drops_only_that_asset(identity, clock) -> None:
    cache = DecisionCache(ttl_seconds=300, clock=clock)
    engine = AuthorizationEngine(identity, cache=cache)
    engine.decide(AccessAction.VIEW, _asset(asset_id="a"), "student-1")
    engine.decide(AccessAction.VIEW, _asset(asset_id="b"), "student-1")

    assert cache.invalidate_asset("a") == 1
    assert len(cache) == 1


def test_access_summary_counts(identity) -> None:
    engine = AuthorizationEngine(identity)
    assets = [
        _asset(asset_id="a", owner_id="teacher-1"),
        _asset(asset_id="b"),
        _asset(asset_id="c", collection_id="course-hidden"),
    ]

    summary = engine.access_summary("teacher-1", assets)

    assert summary == {"total": 3, "owned": 1, "viewable": 3, "downloadable": 2, "manageable": 2}


def test_build_directory_from_yaml_payload() -> None:
    directory = build_directory(
        {
            "site_admins": ["root"],
            "collections": [
                {
                    "id": "c1",
                    "visible": False,
                    "members": ["u1"],
                    "capabilities": {"u1": ["collection:viewhidden", "not-a-capability"]},
                }
            ],
        }
    )

    assert directory.has_capability("site:config", "site", "root") is True
    assert directory.is_enrolled("c1", "u1") is True
    assert directory.get_collection("c1").visible is False
    assert directory.has_capability("collection:viewhidden", "c1", "u1") is True
    assert directory.has_capability("not-a-capability", "c1", "u1") is False
