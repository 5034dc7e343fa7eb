"""Static directive lists fed into the defconfig mutation primitives.

These are plain data: the device profile for the Pixel 8a (Tensor G3) and
the feature/tuning blocks applied after the patch chain.  Lists are applied
in order with ``append_if_absent``; ``LTO_DIRECTIVES`` is an exclusive choice group.
"""

from __future__ import annotations

PIXEL8A_DIRECTIVES: tuple[str, ...] = (
    # CPU topology (Cortex-X3 / A715 / A510)
    "CONFIG_ARM64_CORTEX_X3=y",
    "CONFIG_ARM64_CORTEX_A715=y",
    "CONFIG_ARM64_CORTEX_A510=y",
    "CONFIG_ARM64_VA_BITS=48",
    "CONFIG_ARM64_PA_BITS=48",
    "CONFIG_ARM64_TAGGED_ADDR_ABI=y",
    "CONFIG_ARM64_SVE=y",
    "CONFIG_ARM64_BTI=y",
    "CONFIG_ARM64_PTR_AUTH=y",
    # Scheduler
    "CONFIG_SCHED_MC=y",
    "CONFIG_SCHED_CORE=y",
    "CONFIG_ENERGY_MODEL=y",
    "CONFIG_UCLAMP_TASK=y",
    "CONFIG_UCLAMP_TASK_GROUP=y",
    "CONFIG_SCHEDUTIL=y",
    # cpufreq / cpuidle
    "CONFIG_CPU_FREQ=y",
    "CONFIG_CPUFREQ_DT=y",
    "CONFIG_CPU_FREQ_GOV_SCHEDUTIL=y",
    "CONFIG_CPU_FREQ_DEFAULT_GOV_SCHEDUTIL=y",
    "CONFIG_OPP=y",
    "CONFIG_CPU_IDLE=y",
    "CONFIG_ARM_PSCI_CPUIDLE=y",
    # Thermal
    "CONFIG_THERMAL=y",
    "CONFIG_CPU_THERMAL=y",
    "CONFIG_DEVFREQ_THERMAL=y",
    "CONFIG_THERMAL_GOV_POWER_ALLOCATOR=y",
    "CONFIG_THERMAL_GOV_STEP_WISE=y",
    "CONFIG_THERMAL_GOV_FAIR_SHARE=y",
    "CONFIG_THERMAL_EMULATION=y",
    "CONFIG_THERMAL_WRITABLE_TRIPS=y",
    "CONFIG_POWER_CAP=y",
    "CONFIG_PERF_EVENTS=y",
    "CONFIG_ARM64_SME=y",
    # Memory
    "CONFIG_NUMA_BALANCING=y",
    "CONFIG_CMA=y",
    "CONFIG_CMA_AREAS=7",
    # Networking
    "CONFIG_TCP_CONG_ADVANCED=y",
    "CONFIG_TCP_CONG_CUBIC=y",
    "CONFIG_NET_SCH_FQ_CODEL=y",
    "CONFIG_DEFAULT_FQ_CODEL=y",
    "CONFIG_NET_SCH_CAKE=y",
    "CONFIG_DEFAULT_CAKE=y",
    'CONFIG_DEFAULT_TCP_CONG="bbr"',
    # Filesystem
    "CONFIG_F2FS_FS=y",
    "CONFIG_F2FS_FS_XATTR=y",
    "CONFIG_F2FS_FS_POSIX_ACL=y",
    "CONFIG_F2FS_FS_SECURITY=y",
    "CONFIG_F2FS_FS_COMPRESSION=y",
)

KERNELSU_DIRECTIVES: tuple[str, ...] = (
    "CONFIG_KSU=y",
    "CONFIG_KSU_KPROBES_HOOK=n",
    "CONFIG_KSU_DEBUG=n",
    "CONFIG_KSU_THRONE_TRACKER_ALWAYS_THREADED=y",
    "CONFIG_KSU_ALLOWLIST_WORKAROUND=n",
    "CONFIG_KSU_LSM_SECURITY_HOOKS=y",
)

SUSFS_DIRECTIVES: tuple[str, ...] = (
    "CONFIG_KSU_SUSFS=y",
    "CONFIG_KSU_SUSFS_SUS_PATH=y",
    "CONFIG_KSU_SUSFS_SUS_MOUNT=y",
    "CONFIG_KSU_SUSFS_AUTO_ADD_SUS_KSU_DEFAULT_MOUNT=y",
    "CONFIG_KSU_SUSFS_AUTO_ADD_SUS_BIND_MOUNT=y",
    "CONFIG_KSU_SUSFS_SUS_KSTAT=y",
    "CONFIG_KSU_SUSFS_TRY_UMOUNT=y",
    "CONFIG_KSU_SUSFS_AUTO_ADD_TRY_UMOUNT_FOR_BIND_MOUNT=y",
    "CONFIG_KSU_SUSFS_SPOOF_UNAME=y",
    "CONFIG_KSU_SUSFS_ENABLE_LOG=y",
    "CONFIG_KSU_SUSFS_HIDE_KSU_SUSFS_SYMBOLS=y",
    "CONFIG_KSU_SUSFS_SPOOF_CMDLINE_OR_BOOTCONFIG=y",
    "CONFIG_KSU_SUSFS_OPEN_REDIRECT=y",
    "CONFIG_KSU_SUSFS_SUS_SU=n",
    "CONFIG_KSU_SUSFS_SUS_MAP=y",
)

FILESYSTEM_DIRECTIVES: tuple[str, ...] = (
    "CONFIG_TMPFS_XATTR=y",
    "CONFIG_TMPFS_POSIX_ACL=y",
)

NETFILTER_DIRECTIVES: tuple[str, ...] = (
    "CONFIG_IP_NF_TARGET_TTL=y",
    "CONFIG_IP6_NF_TARGET_HL=y",
    "CONFIG_IP6_NF_MATCH_HL=y",
)

TCP_CONGESTION_DIRECTIVES: tuple[str, ...] = (
    "CONFIG_TCP_CONG_ADVANCED=y",
    "CONFIG_TCP_CONG_BBR=y",
    "CONFIG_NET_SCH_FQ=y",
    "CONFIG_TCP_CONG_BIC=n",
    "CONFIG_TCP_CONG_WESTWOOD=n",
    "CONFIG_TCP_CONG_HTCP=n",
)

IPSET_DIRECTIVES: tuple[str, ...] = (
    "CONFIG_IP_SET=y",
    "CONFIG_IP_SET_MAX=256",
    "CONFIG_IP_SET_BITMAP_IP=y",
    "CONFIG_IP_SET_BITMAP_IPMAC=y",
    "CONFIG_IP_SET_BITMAP_PORT=y",
    "CONFIG_IP_SET_HASH_IP=y",
    "CONFIG_IP_SET_HASH_IPPORT=y",
    "CONFIG_IP_SET_HASH_IPPORTIP=y",
    "CONFIG_IP_SET_HASH_IPPORTNET=y",
    "CONFIG_IP_SET_HASH_NET=y",
    "CONFIG_IP_SET_HASH_NETNET=y",
    "CONFIG_IP_SET_HASH_NETPORT=y",
    "CONFIG_IP_SET_HASH_NETIFACE=y",
)

OPTIMIZATION_DIRECTIVES: tuple[str, ...] = (
    "CONFIG_CC_OPTIMIZE_FOR_PERFORMANCE=y",
    "CONFIG_CCACHE=y",
)

TUNING_DIRECTIVES: tuple[str, ...] = (
    *KERNELSU_DIRECTIVES,
    *SUSFS_DIRECTIVES,
    *FILESYSTEM_DIRECTIVES,
    *NETFILTER_DIRECTIVES,
    *TCP_CONGESTION_DIRECTIVES,
    *IPSET_DIRECTIVES,
    *OPTIMIZATION_DIRECTIVES,
)

LTO_DIRECTIVES: dict[str, str] = {
    "full": "CONFIG_LTO_CLANG_FULL",
    "thin": "CONFIG_LTO_CLANG_THIN",
    "none": "CONFIG_LTO_NONE",
}

# Files the GKI build refuses to link against once symbols are added.
PROTECTED_EXPORTS_GLOB = "android/abi_gki_protected_exports_*"
