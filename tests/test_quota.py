from mentioned.models.schemas import QuotaState
from mentioned.services.quota import check_scan_quota

class TestQuota:
    def test_first_free_scan_allowed(self, settings):
        d = check_scan_quota(settings, QuotaState())
        assert d.allowed and d.plan == "free"

    def test_second_free_scan_needs_upgrade(self, settings):
        d = check_scan_quota(settings, QuotaState(plan="free", free_scan_used=True))
        assert not d.allowed
        assert d.reason == "upgrade_required"

    def test_starter_limit(self, settings):
        ok = check_scan_quota(settings, QuotaState(plan="starter", scans_used=9, scans_limit=10))
        assert ok.allowed and ok.scans_limit == 10
        blocked = check_scan_quota(settings, QuotaState(plan="starter", scans_used=10, scans_limit=10))
        assert not blocked.allowed
        assert blocked.reason == "scan_limit_reached"

    def test_starter_falls_back_to_plan_limit(self, settings):
        d = check_scan_quota(settings, QuotaState(plan="starter", scans_used=10))
        assert not d.allowed and d.scans_limit == 10

    def test_pro_is_not_capped(self, settings):
        d = check_scan_quota(settings, QuotaState(plan="pro_annual", scans_used=500))
        assert d.allowed and d.plan == "pro_annual"

    def test_whitelisted_email(self, settings):
        d = check_scan_quota(settings, QuotaState(free_scan_used=True), email="VIP@example.com ")
        assert d.allowed
        assert d.plan == "pro_monthly"

    def test_usage_is_recorded_per_user(self, settings, store):
        store.record_scan_usage("u1")
        assert not check_scan_quota(settings, store.quota_state("u1")).allowed
        assert check_scan_quota(settings, store.quota_state("u2")).allowed

        store.set_subscription("u3", "starter", scans_limit=2, scans_used=1)
        store.record_scan_usage("u3")
        state = store.quota_state("u3")
        assert state.scans_used == 2
        assert check_scan_quota(settings, state).reason == "scan_limit_reached"
