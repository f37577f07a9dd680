"""
Tests for the container tier policy: tier lookup, resource bounds and the
hardening transform applied to every machine config.
"""

import pytest

from preview_orchestrator.container_tiers import (
    TIER_CONFIGS,
    ContainerTier,
    apply_security_hardening,
    get_container_tier,
    list_tiers,
    parse_tier,
    validate_custom_config,
    validate_resource_limits,
)


@pytest.mark.fast
class TestTierLookup:
    def test_known_tiers_resolve(self):
        assert parse_tier("free") is ContainerTier.FREE
        assert parse_tier("basic") is ContainerTier.BASIC
        assert parse_tier("pro") is ContainerTier.PRO

    def test_tier_names_are_case_insensitive(self):
        assert parse_tier(" PRO ") is ContainerTier.PRO

    def test_unknown_tier_falls_back_to_free(self):
        assert parse_tier("enterprise") is ContainerTier.FREE
        assert get_container_tier("enterprise") is TIER_CONFIGS[ContainerTier.FREE]

    def test_missing_tier_uses_default(self):
        assert parse_tier(None) is ContainerTier.FREE
        assert parse_tier("") is ContainerTier.FREE

    def test_enum_passes_through(self):
        assert parse_tier(ContainerTier.BASIC) is ContainerTier.BASIC

    def test_list_tiers_in_declaration_order(self):
        assert [tier.name for tier in list_tiers()] == ["free", "basic", "pro"]


@pytest.mark.fast
class TestTierBudgets:
    def test_free_tier_budget(self):
        free = get_container_tier("free")

        assert free.guest.cpu_kind == "shared"
        assert free.guest.cpus == 1
        assert free.guest.memory_mb == 256
        assert free.max_duration_hours == 1
        assert free.max_duration_seconds == 3600
        assert free.allowed_ports == (8080, 8081, 3000)

    def test_pro_tier_gets_dedicated_cpu(self):
        pro = get_container_tier("pro")

        assert pro.guest.cpu_kind == "dedicated"
        assert pro.guest.cpus == 4
        assert pro.disk_iops == 3000
        assert pro.health_check_interval_seconds == 15

    def test_budgets_grow_with_tier(self):
        free, basic, pro = list_tiers()

        assert free.guest.memory_mb < basic.guest.memory_mb < pro.guest.memory_mb
        assert free.max_duration_hours < basic.max_duration_hours < pro.max_duration_hours
        assert set(free.allowed_ports) < set(basic.allowed_ports) < set(pro.allowed_ports)

    def test_tier_config_is_immutable(self):
        free = get_container_tier("free")

        with pytest.raises(AttributeError):
            free.max_duration_hours = 100

    def test_to_dict_exposes_budget(self):
        data = get_container_tier("basic").to_dict()

        assert data["name"] == "basic"
        assert data["guest"] == {"cpu_kind": "shared", "cpus": 2, "memory_mb": 512}
        assert data["alert_thresholds"]["memory_percent"] == 90


@pytest.mark.fast
class TestResourceValidation:
    def test_valid_request(self):
        assert validate_resource_limits(2, 512, 2) == (True, [])

    @pytest.mark.parametrize(
        "cpus, memory_mb, disk_gb, message",
        [
            (0, 512, 2, "CPU count must be between 1 and 8"),
            (9, 512, 2, "CPU count must be between 1 and 8"),
            (1, 64, 2, "Memory must be between 128MB and 4096MB"),
            (1, 8192, 2, "Memory must be between 128MB and 4096MB"),
            (1, 512, 20, "Disk size must be between 1GB and 10GB"),
        ],
    )
    def test_out_of_bounds_request(self, cpus, memory_mb, disk_gb, message):
        valid, errors = validate_resource_limits(cpus, memory_mb, disk_gb)

        assert valid is False
        assert errors == [message]

    def test_all_errors_reported(self):
        valid, errors = validate_resource_limits(0, 0, 0)

        assert valid is False
        assert len(errors) == 3


@pytest.mark.fast
class TestCustomConfigValidation:
    def setup_method(self):
        self.free = TIER_CONFIGS[ContainerTier.FREE]

    def test_overrides_within_budget(self):
        config = {"env": {"DEBUG": "1"}, "guest": {"cpus": 1, "memory_mb": 128}}

        assert validate_custom_config(config, self.free) == []

    def test_guest_above_tier_allotment(self):
        errors = validate_custom_config({"guest": {"cpus": 4, "memory_mb": 1024}}, self.free)

        assert errors == [
            "CPU count exceeds the free tier limit of 1",
            "Memory exceeds the free tier limit of 256MB",
        ]

    def test_guest_outside_platform_bounds(self):
        pro = TIER_CONFIGS[ContainerTier.PRO]

        errors = validate_custom_config({"guest": {"memory_mb": 64}}, pro)

        assert errors == ["Memory must be between 128MB and 4096MB"]

    def test_cpu_kind_cannot_change(self):
        errors = validate_custom_config({"guest": {"cpu_kind": "performance"}}, self.free)

        assert errors == ["CPU kind must be shared for the free tier"]

    @pytest.mark.parametrize("guest", [{"cpus": "2"}, {"memory_mb": True}, {"cpus": 1.5}])
    def test_non_integer_guest_values(self, guest):
        errors = validate_custom_config({"guest": guest}, self.free)

        assert errors == ["guest cpus and memory_mb must be integers"]

    def test_protected_keys(self):
        errors = validate_custom_config(
            {"image": "evil:latest", "auto_destroy": False, "guest": "big"}, self.free
        )

        assert errors == [
            "image cannot be overridden",
            "auto_destroy cannot be overridden",
            "guest must be an object",
        ]


@pytest.mark.fast
class TestSecurityHardening:
    def setup_method(self):
        self.config = {
            "image": "preview:latest",
            "services": [
                {"protocol": "tcp", "internal_port": 8080},
                {"protocol": "tcp", "internal_port": 22},
                {"protocol": "tcp", "internal_port": 4000},
            ],
            "metadata": {"owner": "someone"},
        }

    def test_input_is_not_mutated(self):
        apply_security_hardening(self.config, get_container_tier("free"))

        assert len(self.config["services"]) == 3
        assert "checks" not in self.config
        assert self.config["metadata"] == {"owner": "someone"}

    def test_disallowed_ports_are_dropped(self):
        hardened = apply_security_hardening(self.config, get_container_tier("free"))

        assert [s["internal_port"] for s in hardened["services"]] == [8080]

    def test_pro_tier_keeps_its_extra_ports(self):
        hardened = apply_security_hardening(self.config, get_container_tier("pro"))

        assert [s["internal_port"] for s in hardened["services"]] == [8080, 4000]

    def test_health_check_added_with_tier_interval(self):
        free = apply_security_hardening(self.config, get_container_tier("free"))
        pro = apply_security_hardening(self.config, get_container_tier("pro"))

        assert free["checks"]["health"]["path"] == "/health"
        assert free["checks"]["health"]["port"] == 8080
        assert free["checks"]["health"]["interval"] == "30s"
        assert pro["checks"]["health"]["interval"] == "15s"

    def test_security_metadata_stamped(self):
        hardened = apply_security_hardening(self.config, get_container_tier("basic"))

        assert hardened["metadata"]["owner"] == "someone"
        assert hardened["metadata"]["security-tier"] == "hardened"
        assert hardened["metadata"]["firewall-enabled"] == "true"
        assert hardened["metadata"]["allowed-ports"] == "8080,8081,3000,3001"
