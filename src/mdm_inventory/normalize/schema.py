from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

INTUNE_PREFIX = "microsoft.intune."


@dataclass(frozen=True)
class ResourceTypeMeta:
    resource_type: str
    category: str
    platform: str = ""


@dataclass(frozen=True)
class DeviceRecord:
    source_id: str
    device_name: str = ""
    os: str = ""
    os_version: str = ""
    model: str = ""
    user_name: str = ""
    user_email: str = ""
    compliance: str = "unknown"
    is_encrypted: bool = False
    jail_broken: str = ""
    is_supervised: bool = False
    threat_state: str = ""
    last_seen: Optional[datetime] = None


@dataclass(frozen=True)
class PolicyRecord:
    category: str
    source_id: str
    name: str
    type: str
    platform: str
    description: str = ""
    settings: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> Tuple[str, str, str, str]:
        return (self.name, self.category, self.type, self.platform)


@dataclass(frozen=True)
class PolicySetting:
    name: str
    value: str


@dataclass(frozen=True)
class ResourceGroup:
    resource_type: str
    instances: List[Dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class ExportResult:
    groups: List[ResourceGroup] = field(default_factory=list)

    @property
    def instance_count(self) -> int:
        return sum(len(g.instances) for g in self.groups)


@dataclass(frozen=True)
class PolicyEndpoint:
    """
    One per-category Graph collection used when the bulk export is unavailable.
    path is relative to deviceManagement/ unless full_path is set.
    """

    category: str
    path: str = ""
    full_path: str = ""
    beta: bool = False
    settings: bool = False

    @property
    def relative_path(self) -> str:
        return self.full_path or f"deviceManagement/{self.path}"


def _intune(name: str, category: str, platform: str) -> ResourceTypeMeta:
    return ResourceTypeMeta(resource_type=INTUNE_PREFIX + name, category=category, platform=platform)


_CP = "Configuration Profiles"
_ES = "Endpoint Security"

# Resource types requested in every bulk export, with their display category and platform.
RESOURCE_CATALOG: Tuple[ResourceTypeMeta, ...] = (
    # Compliance
    _intune("deviceCompliancePolicyWindows10", "Compliance", "Windows"),
    _intune("deviceCompliancePolicyAndroid", "Compliance", "Android"),
    _intune("deviceCompliancePolicyAndroidDeviceOwner", "Compliance", "Android"),
    _intune("deviceCompliancePolicyAndroidWorkProfile", "Compliance", "Android"),
    _intune("deviceCompliancePolicymacOS", "Compliance", "macOS"),
    _intune("deviceCompliancePolicyiOS", "Compliance", "iOS"),
    # Configuration profiles
    _intune("deviceConfigurationPolicyWindows10", _CP, "Windows"),
    _intune("deviceConfigurationPolicyAndroidDeviceOwner", _CP, "Android"),
    _intune("deviceConfigurationPolicyAndroidWorkProfile", _CP, "Android"),
    _intune("deviceConfigurationPolicyAndroidOpenSourceProject", _CP, "Android"),
    _intune("deviceConfigurationPolicymacOS", _CP, "macOS"),
    _intune("deviceConfigurationPolicyiOS", _CP, "iOS"),
    _intune("deviceConfigurationPolicyAndroidDeviceAdministrator", _CP, "Android"),
    _intune("deviceConfigurationAdministrativeTemplatePolicyWindows10", _CP, "Windows"),
    _intune("deviceConfigurationCustomPolicyWindows10", _CP, "Windows"),
    _intune("deviceConfigurationEndpointProtectionPolicyWindows10", _CP, "Windows"),
    _intune("deviceConfigurationIdentityProtectionPolicyWindows10", _CP, "Windows"),
    _intune("deviceConfigurationDeliveryOptimizationPolicyWindows10", _CP, "Windows"),
    _intune("deviceConfigurationFirmwareInterfacePolicyWindows10", _CP, "Windows"),
    _intune("deviceConfigurationDomainJoinPolicyWindows10", _CP, "Windows"),
    _intune("deviceConfigurationHealthMonitoringConfigurationPolicyWindows10", _CP, "Windows"),
    _intune("deviceConfigurationKioskPolicyWindows10", _CP, "Windows"),
    _intune("deviceConfigurationNetworkBoundaryPolicyWindows10", _CP, "Windows"),
    _intune("deviceConfigurationSecureAssessmentPolicyWindows10", _CP, "Windows"),
    _intune("deviceConfigurationSharedMultiDevicePolicyWindows10", _CP, "Windows"),
    _intune("deviceConfigurationWindowsTeamPolicyWindows10", _CP, "Windows"),
    _intune("deviceConfigurationDefenderForEndpointOnboardingPolicyWindows10", _CP, "Windows"),
    _intune("deviceConfigurationEmailProfilePolicyWindows10", _CP, "Windows"),
    _intune("deviceConfigurationVpnPolicyWindows10", _CP, "Windows"),
    _intune("deviceConfigurationWiredNetworkPolicyWindows10", _CP, "Windows"),
    # Certificates
    _intune("deviceConfigurationTrustedCertificatePolicyWindows10", _CP, "Windows"),
    _intune("deviceConfigurationPkcsCertificatePolicyWindows10", _CP, "Windows"),
    _intune("deviceConfigurationScepCertificatePolicyWindows10", _CP, "Windows"),
    _intune("deviceConfigurationImportedPfxCertificatePolicyWindows10", _CP, "Windows"),
    # Endpoint security
    _intune("antivirusPolicyWindows10SettingCatalog", _ES, "Windows"),
    _intune("attackSurfaceReductionRulesPolicyWindows10ConfigManager", _ES, "Windows"),
    _intune("settingCatalogAsrRulesPolicyWindows10", _ES, "Windows"),
    _intune("endpointDetectionAndResponsePolicyWindows10", _ES, "Windows"),
    _intune("exploitProtectionPolicyWindows10SettingCatalog", _ES, "Windows"),
    _intune("accountProtectionPolicy", _ES, "Windows"),
    _intune("accountProtectionLocalUserGroupMembershipPolicy", _ES, "Windows"),
    # App protection and configuration
    _intune("appProtectionPolicyAndroid", "App Protection", "Android"),
    _intune("appProtectionPolicyiOS", "App Protection", "iOS"),
    _intune("appConfigurationPolicy", "App Configuration", "All"),
    # Settings catalog
    _intune("settingCatalogCustomPolicyWindows10", "Settings Catalog", "Windows"),
    # Enrollment
    _intune("deviceEnrollmentPlatformRestriction", "Enrollment", "All"),
    _intune("deviceEnrollmentStatusPageWindows10", "Enrollment", "Windows"),
    # Windows update
    _intune("windowsUpdateForBusinessFeatureUpdateProfileWindows10", "Windows Update", "Windows"),
    _intune("windowsUpdateForBusinessRingUpdateProfileWindows10", "Windows Update", "Windows"),
    # Autopilot
    _intune("windowsAutopilotDeploymentProfileAzureADJoined", "Autopilot", "Windows"),
    _intune("windowsAutopilotDeploymentProfileAzureADHybridJoined", "Autopilot", "Windows"),
    # Information protection
    _intune("windowsInformationProtectionPolicyWindows10MdmEnrolled", "Information Protection", "Windows"),
    # Wi-Fi
    _intune("wifiConfigurationPolicyWindows10", _CP, "Windows"),
    _intune("wifiConfigurationPolicymacOS", _CP, "macOS"),
    _intune("wifiConfigurationPolicyAndroidDeviceAdministrator", _CP, "Android"),
    _intune("wifiConfigurationPolicyAndroidEnterpriseDeviceOwner", _CP, "Android"),
    _intune("wifiConfigurationPolicyAndroidEnterpriseWorkProfile", _CP, "Android"),
    _intune("wifiConfigurationPolicyAndroidForWork", _CP, "Android"),
    _intune("wifiConfigurationPolicyAndroidOpenSourceProject", _CP, "Android"),
    # Roles
    _intune("roleDefinition", "Roles", ""),
    _intune("roleAssignment", "Roles", ""),
    # Policy sets, filters, categories
    _intune("policySets", "Policy Sets", "All"),
    _intune("deviceAndAppManagementAssignmentFilter", "Assignment Filters", "All"),
    _intune("deviceCategory", "Device Categories", "All"),
    # Application control
    _intune("applicationControlPolicyWindows10", _ES, "Windows"),
)

CATALOG_INDEX: Dict[str, ResourceTypeMeta] = {m.resource_type: m for m in RESOURCE_CATALOG}

# Per-category collections walked when the bulk export path fails.
LEGACY_ENDPOINTS: Tuple[PolicyEndpoint, ...] = (
    PolicyEndpoint("Compliance Policies", path="deviceCompliancePolicies"),
    PolicyEndpoint("Compliance Policies (Settings Catalog)", path="compliancePolicies", beta=True, settings=True),
    PolicyEndpoint("Compliance Scripts", path="deviceComplianceScripts", beta=True),
    PolicyEndpoint("Configuration Profiles", path="deviceConfigurations"),
    PolicyEndpoint("Settings Catalog", path="configurationPolicies", beta=True, settings=True),
    PolicyEndpoint("Group Policy (Admin Templates)", path="groupPolicyConfigurations", beta=True),
    PolicyEndpoint("Endpoint Security", path="intents", beta=True),
    PolicyEndpoint("Security Baselines", path="templates", beta=True),
    PolicyEndpoint("App Protection", full_path="deviceAppManagement/managedAppPolicies", beta=True),
    PolicyEndpoint("PowerShell Scripts", path="deviceManagementScripts", beta=True),
    PolicyEndpoint("Shell Scripts (macOS)", path="deviceShellScripts", beta=True),
    PolicyEndpoint("Health Scripts (Remediations)", path="deviceHealthScripts", beta=True),
    PolicyEndpoint("Custom Attribute Scripts", path="deviceCustomAttributeShellScripts", beta=True),
    PolicyEndpoint("Enrollment Configurations", path="deviceEnrollmentConfigurations"),
    PolicyEndpoint("Autopilot Profiles", path="windowsAutopilotDeploymentProfiles", beta=True),
    PolicyEndpoint("Windows Update Policies", path="windowsQualityUpdatePolicies", beta=True),
    PolicyEndpoint("Hardware Configurations", path="hardwareConfigurations", beta=True),
    PolicyEndpoint("Reusable Policy Settings", path="reusablePolicySettings", beta=True),
)


def catalog_resource_types() -> List[str]:
    return [m.resource_type for m in RESOURCE_CATALOG]
