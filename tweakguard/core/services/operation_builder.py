"""
Operation builder — turns catalog entries into OperationDefinitions.

Each builder is a pure function of one catalog entry. Values that end
up inside a script go through ``input_sanitizer`` first; a bad entry
raises ``ValueError`` and the whole build fails (the CLI maps this to
exit code 6).

Namespaces:

    tweak.<id>            catalog tweak (apply / undo / detect / capture)
    fix.<id>              catalog fix (apply / undo)
    feature.<id>          Windows optional feature toggle
    store.app.<name>      winget / choco install
    panel.<id>            legacy control-panel launcher
    updates.mode.<mode>   Windows Update policy
    safety.restore-point  system restore point
"""

from __future__ import annotations

import logging
import textwrap

from tweakguard.core.models.catalog import (
    AutomationConfig,
    CatalogApp,
    FeatureDefinition,
    FixDefinition,
    LegacyPanelDefinition,
    TweakDefinition,
)
from tweakguard.core.models.operation import OperationDefinition, RiskTier, ScriptStep
from tweakguard.core.services import input_sanitizer as sanitize

logger = logging.getLogger(__name__)

RESTORE_POINT_OPERATION_ID = "safety.restore-point"
RESTORE_POINT_STEP = "restore-point"
RESTORE_POINT_SCRIPT = (
    "Checkpoint-Computer -Description 'Tweakguard restore point' "
    "-RestorePointType MODIFY_SETTINGS -ErrorAction Stop"
)

CAPTURE_STEP_PREFIX = "capture:"


# ═══════════════════════════════════════════════════════════════════
#  Catalog operations
# ═══════════════════════════════════════════════════════════════════


def build_registry_capture_script(key: str) -> str:
    """Script printing a registry key's values as compressed JSON ('' if absent)."""
    escaped = sanitize.escape_single_quotes(key)
    return (
        "$WarningPreference='Continue'; "
        f"$p='{escaped}'; "
        "if (Test-Path $p) { "
        "$item = Get-ItemProperty -Path $p -ErrorAction Stop; "
        "$out = [ordered]@{}; "
        "foreach ($prop in $item.PSObject.Properties) { "
        "if ($prop.MemberType -ne 'NoteProperty' -or $prop.Name -like 'PS*') { continue }; "
        "$value = $prop.Value; "
        "if ($value -is [byte[]]) { $out[$prop.Name] = [Convert]::ToBase64String($value) } "
        "else { $out[$prop.Name] = $value } "
        "}; "
        "$out | ConvertTo-Json -Depth 8 -Compress "
        "} else { '' }"
    )


def build_tweak_operation(tweak: TweakDefinition) -> OperationDefinition:
    return OperationDefinition(
        id=f"tweak.{tweak.id}",
        title=tweak.name,
        description=tweak.description,
        risk_tier=tweak.risk_tier,
        reversible=tweak.reversible,
        destructive=tweak.destructive,
        compatibility=tuple(tweak.compatibility),
        detect_script=tweak.detect_script or None,
        run_scripts=(ScriptStep(name="apply", script=tweak.apply_script),),
        undo_scripts=(ScriptStep(name="undo", script=tweak.undo_script),),
        state_capture_scripts=tuple(
            ScriptStep(name=key, script=build_registry_capture_script(key))
            for key in tweak.state_capture_keys
        ),
    )


def build_fix_operation(fix: FixDefinition) -> OperationDefinition:
    return OperationDefinition(
        id=f"fix.{fix.id}",
        title=fix.name,
        description=fix.description,
        risk_tier=fix.risk_tier,
        reversible=fix.reversible,
        destructive=fix.destructive,
        compatibility=tuple(fix.compatibility),
        run_scripts=(ScriptStep(name="apply", script=fix.apply_script),),
        undo_scripts=(ScriptStep(name="undo", script=fix.undo_script),),
    )


def build_feature_operation(feature: FeatureDefinition) -> OperationDefinition:
    name = sanitize.ensure_feature_name(feature.feature_name, f"feature '{feature.id}'")
    literal = sanitize.to_single_quoted_literal(name)
    return OperationDefinition(
        id=f"feature.{feature.id}",
        title=f"Enable {feature.name}",
        description=feature.description,
        risk_tier=RiskTier.ADVANCED,
        reversible=True,
        requires_reboot=True,
        compatibility=tuple(feature.compatibility),
        run_scripts=(ScriptStep(
            name="enable",
            script=f"Enable-WindowsOptionalFeature -Online -FeatureName {literal} -All -NoRestart -ErrorAction Stop",
        ),),
        undo_scripts=(ScriptStep(
            name="disable",
            script=f"Disable-WindowsOptionalFeature -Online -FeatureName {literal} -NoRestart -ErrorAction Stop",
        ),),
    )


def build_panel_operation(panel: LegacyPanelDefinition) -> OperationDefinition:
    script = sanitize.ensure_safe_legacy_launch_script(panel.launch_script, f"panel '{panel.id}'")
    return OperationDefinition(
        id=f"panel.{panel.id}",
        title=panel.name,
        description=panel.description,
        risk_tier=RiskTier.BASIC,
        reversible=True,
        run_scripts=(ScriptStep(name="launch", script=script),),
    )


# ── Store apps ─────────────────────────────────────────────────────

_MANAGER_PROBE = (
    "$hasWinget = $null -ne (Get-Command winget -ErrorAction SilentlyContinue); "
    "$hasChoco = $null -ne (Get-Command choco -ErrorAction SilentlyContinue); "
    "if (-not $hasChoco) { $hasChoco = Test-Path (Join-Path $env:ProgramData 'chocolatey\\bin\\choco.exe') }; "
)


def store_operation_id(display_name: str) -> str:
    return "store.app." + "".join(c for c in display_name if c.isalnum()).lower()


def build_store_operation(app: CatalogApp) -> OperationDefinition:
    context = f"store app '{app.display_name}'"
    query = sanitize.ensure_package_query(app.display_name, f"{context} displayName")
    winget_id = (
        sanitize.ensure_package_id(app.winget_id, f"{context} wingetId") if app.winget_id.strip() else ""
    )
    choco_id = (
        sanitize.ensure_package_id(app.choco_id, f"{context} chocoId") if app.choco_id.strip() else ""
    )
    if winget_id:
        winget = (
            f"winget install --id {sanitize.to_single_quoted_literal(winget_id)} -e "
            "--accept-source-agreements --accept-package-agreements --silent"
        )
    else:
        winget = (
            f"winget install --name {sanitize.to_single_quoted_literal(query)} --exact "
            "--accept-source-agreements --accept-package-agreements --silent"
        )
    choco = f"choco install {sanitize.to_single_quoted_literal(choco_id)} -y" if choco_id else ""

    if choco:
        install = (
            f"{_MANAGER_PROBE}if($hasWinget){{ {winget} }} elseif($hasChoco){{ {choco} }} "
            "else { throw 'No package manager available' }"
        )
    else:
        install = f"{_MANAGER_PROBE}if($hasWinget){{ {winget} }} else {{ throw 'winget missing' }}"

    if not winget_id and choco_id:
        uninstall = f"choco uninstall {sanitize.to_single_quoted_literal(choco_id)} -y"
    elif not winget_id:
        uninstall = f"winget uninstall --name {sanitize.to_single_quoted_literal(query)} --exact --silent"
    else:
        uninstall = f"winget uninstall --id {sanitize.to_single_quoted_literal(winget_id)} -e --silent"

    return OperationDefinition(
        id=store_operation_id(app.display_name),
        title=f"Install {app.display_name}",
        description="Install app from catalog",
        risk_tier=RiskTier.BASIC,
        reversible=True,
        tags=tuple(app.tags),
        run_scripts=(ScriptStep(name="install", script=install, requires_network=True),),
        undo_scripts=(ScriptStep(name="uninstall", script=uninstall),),
    )


# ═══════════════════════════════════════════════════════════════════
#  Windows Update modes
# ═══════════════════════════════════════════════════════════════════

_REGISTRY_DWORD_HELPER = r"""
function Set-RegistryDword64([string]$subKey,[string]$name,[int]$value) {
  $base=[Microsoft.Win32.RegistryKey]::OpenBaseKey([Microsoft.Win32.RegistryHive]::LocalMachine,[Microsoft.Win32.RegistryView]::Registry64)
  try {
    $key=$base.CreateSubKey($subKey)
    if($null -eq $key){ throw "Unable to open HKLM:\$subKey" }
    try { $key.SetValue($name,$value,[Microsoft.Win32.RegistryValueKind]::DWord) } finally { $key.Dispose() }
  } finally {
    $base.Dispose()
  }
}
"""

_REGISTRY_REMOVE_HELPERS = r"""
function Remove-RegistryValue64([string]$subKey,[string]$name) {
  $base=[Microsoft.Win32.RegistryKey]::OpenBaseKey([Microsoft.Win32.RegistryHive]::LocalMachine,[Microsoft.Win32.RegistryView]::Registry64)
  try {
    $key=$base.OpenSubKey($subKey,$true)
    if($null -eq $key){ return }
    try {
      if($null -ne $key.GetValue($name,$null)){ $key.DeleteValue($name,$false) }
    } finally {
      $key.Dispose()
    }
  } finally {
    $base.Dispose()
  }
}

function Remove-RegistrySubKeyIfEmpty64([string]$subKey) {
  $base=[Microsoft.Win32.RegistryKey]::OpenBaseKey([Microsoft.Win32.RegistryHive]::LocalMachine,[Microsoft.Win32.RegistryView]::Registry64)
  try {
    $key=$base.OpenSubKey($subKey,$false)
    if($null -eq $key){ return }
    try {
      $valueNames=$key.GetValueNames() | Where-Object { $_ -ne '' }
      if($key.SubKeyCount -eq 0 -and $valueNames.Count -eq 0){
        $base.DeleteSubKey($subKey,$false)
      }
    } finally {
      $key.Dispose()
    }
  } finally {
    $base.Dispose()
  }
}
"""

_UPDATE_POLICY_CLEANUP = r"""
Remove-RegistryValue64 -subKey $auSubKey -name 'NoAutoUpdate'
Remove-RegistryValue64 -subKey $wuSubKey -name 'DeferFeatureUpdatesPeriodInDays'
Remove-RegistryValue64 -subKey $wuSubKey -name 'DeferQualityUpdatesPeriodInDays'
Remove-RegistrySubKeyIfEmpty64 -subKey $auSubKey
Remove-RegistrySubKeyIfEmpty64 -subKey $wuSubKey
"""

UPDATE_DISABLE_ALL_RUN_SCRIPT = (
    r"""
$ErrorActionPreference='Stop'
$auSubKey='SOFTWARE\Policies\Microsoft\Windows\WindowsUpdate\AU'
$stateDir=Join-Path $env:ProgramData 'Tweakguard\state'
$statePath=Join-Path $stateDir 'windows-update-service-modes.json'
"""
    + _REGISTRY_DWORD_HELPER
    + r"""
function Get-ServiceStartMode([string]$serviceName) {
  return (Get-CimInstance Win32_Service -Filter "Name='$serviceName'" -ErrorAction Stop).StartMode
}

New-Item -Path $stateDir -ItemType Directory -Force -ErrorAction Stop | Out-Null
@{
  WuauservStartMode = Get-ServiceStartMode 'wuauserv'
  BitsStartMode = Get-ServiceStartMode 'bits'
} | ConvertTo-Json -Compress | Set-Content -Path $statePath -Encoding UTF8 -Force -ErrorAction Stop

Set-RegistryDword64 -subKey $auSubKey -name 'NoAutoUpdate' -value 1
Stop-Service -Name wuauserv -Force -ErrorAction Stop
Stop-Service -Name bits -Force -ErrorAction Stop
Set-Service -Name wuauserv -StartupType Disabled -ErrorAction Stop
Set-Service -Name bits -StartupType Disabled -ErrorAction Stop
"""
).strip()

UPDATE_DEFAULT_RESTORE_SCRIPT = (
    r"""
$ErrorActionPreference='Stop'
$wuSubKey='SOFTWARE\Policies\Microsoft\Windows\WindowsUpdate'
$auSubKey='SOFTWARE\Policies\Microsoft\Windows\WindowsUpdate\AU'
$statePath=Join-Path (Join-Path $env:ProgramData 'Tweakguard\state') 'windows-update-service-modes.json'
"""
    + _REGISTRY_REMOVE_HELPERS
    + r"""
function Resolve-ServiceStartupType([string]$mode) {
  switch ($mode.ToLowerInvariant()) {
    'auto' { return 'Automatic' }
    'automatic' { return 'Automatic' }
    'manual' { return 'Manual' }
    'disabled' { return 'Disabled' }
    default { return 'Manual' }
  }
}

$wuMode='Manual'
$bitsMode='Manual'
if(Test-Path $statePath){
  try {
    $state=Get-Content -Path $statePath -Raw -Encoding UTF8 -ErrorAction Stop | ConvertFrom-Json -ErrorAction Stop
    if($null -ne $state -and $null -ne $state.WuauservStartMode -and -not [string]::IsNullOrWhiteSpace($state.WuauservStartMode)){ $wuMode=[string]$state.WuauservStartMode }
    if($null -ne $state -and $null -ne $state.BitsStartMode -and -not [string]::IsNullOrWhiteSpace($state.BitsStartMode)){ $bitsMode=[string]$state.BitsStartMode }
  } catch {
  }
}

$wuStartup=Resolve-ServiceStartupType $wuMode
$bitsStartup=Resolve-ServiceStartupType $bitsMode
Set-Service -Name wuauserv -StartupType $wuStartup -ErrorAction Stop
Set-Service -Name bits -StartupType $bitsStartup -ErrorAction Stop
if($wuStartup -ne 'Disabled'){ Start-Service -Name wuauserv -ErrorAction Stop }
if($bitsStartup -ne 'Disabled'){ Start-Service -Name bits -ErrorAction Stop }
"""
    + _UPDATE_POLICY_CLEANUP
    + r"""
if(Test-Path $statePath){ Remove-Item -Path $statePath -Force -ErrorAction SilentlyContinue }
"""
).strip()

UPDATE_SECURITY_RUN_SCRIPT = (
    r"""
$ErrorActionPreference='Stop'
$wuSubKey='SOFTWARE\Policies\Microsoft\Windows\WindowsUpdate'
$auSubKey='SOFTWARE\Policies\Microsoft\Windows\WindowsUpdate\AU'
"""
    + _REGISTRY_DWORD_HELPER
    + r"""
Set-RegistryDword64 -subKey $wuSubKey -name 'DeferFeatureUpdatesPeriodInDays' -value 365
Set-RegistryDword64 -subKey $wuSubKey -name 'DeferQualityUpdatesPeriodInDays' -value 4
Set-RegistryDword64 -subKey $auSubKey -name 'NoAutoUpdate' -value 0
"""
).strip()

UPDATE_SECURITY_UNDO_SCRIPT = (
    r"""
$ErrorActionPreference='Stop'
$wuSubKey='SOFTWARE\Policies\Microsoft\Windows\WindowsUpdate'
$auSubKey='SOFTWARE\Policies\Microsoft\Windows\WindowsUpdate\AU'
"""
    + _REGISTRY_REMOVE_HELPERS
    + _UPDATE_POLICY_CLEANUP
).strip()

_AU_DETECT_PREFIX = (
    r"$au='HKLM:\SOFTWARE\Policies\Microsoft\Windows\WindowsUpdate\AU'; $noAuto=$null; "
    r"if(Test-Path $au){ try { $noAuto=(Get-ItemProperty -Path $au -Name NoAutoUpdate -ErrorAction Stop).NoAutoUpdate } catch { $noAuto=$null } }; "
    r"$wu=(Get-Service wuauserv -ErrorAction Stop).StartType; $bits=(Get-Service bits -ErrorAction Stop).StartType; "
)

UPDATE_DISABLE_ALL_DETECT_SCRIPT = (
    _AU_DETECT_PREFIX
    + "if($noAuto -eq 1 -and $wu -eq 'Disabled' -and $bits -eq 'Disabled')"
    "{'PHANTOM_STATUS=Applied'} else {'PHANTOM_STATUS=NotApplied'}"
)

UPDATE_DEFAULT_DETECT_SCRIPT = (
    _AU_DETECT_PREFIX
    + "if(($noAuto -ne 1) -and $wu -ne 'Disabled' -and $bits -ne 'Disabled')"
    "{'PHANTOM_STATUS=Applied'} else {'PHANTOM_STATUS=NotApplied'}"
)

UPDATE_SECURITY_DETECT_SCRIPT = textwrap.dedent(r"""
    $wu='HKLM:\SOFTWARE\Policies\Microsoft\Windows\WindowsUpdate'; $au='HKLM:\SOFTWARE\Policies\Microsoft\Windows\WindowsUpdate\AU'; if((Test-Path $wu) -and (Test-Path $au)){ $p=Get-ItemProperty -Path $wu -ErrorAction Stop; $a=Get-ItemProperty -Path $au -ErrorAction Stop; if($p.DeferFeatureUpdatesPeriodInDays -eq 365 -and $p.DeferQualityUpdatesPeriodInDays -eq 4 -and $a.NoAutoUpdate -eq 0){'PHANTOM_STATUS=Applied'} else {'PHANTOM_STATUS=NotApplied'} } else {'PHANTOM_STATUS=NotApplied'}
""").strip()


def build_update_mode_operation(mode: str) -> OperationDefinition:
    """``Disable All`` / ``Security``; anything else restores defaults."""
    if mode == "Disable All":
        return OperationDefinition(
            id="updates.mode.disableall",
            title="Disable updates",
            description="Disable all updates",
            risk_tier=RiskTier.DANGEROUS,
            reversible=True,
            detect_script=UPDATE_DISABLE_ALL_DETECT_SCRIPT,
            run_scripts=(ScriptStep(name="disable", script=UPDATE_DISABLE_ALL_RUN_SCRIPT),),
            undo_scripts=(ScriptStep(name="default", script=UPDATE_DEFAULT_RESTORE_SCRIPT),),
        )
    if mode == "Security":
        return OperationDefinition(
            id="updates.mode.security",
            title="Security update mode",
            description="Security mode",
            risk_tier=RiskTier.BASIC,
            reversible=True,
            detect_script=UPDATE_SECURITY_DETECT_SCRIPT,
            run_scripts=(ScriptStep(name="security", script=UPDATE_SECURITY_RUN_SCRIPT),),
            undo_scripts=(ScriptStep(name="default", script=UPDATE_SECURITY_UNDO_SCRIPT),),
        )
    return OperationDefinition(
        id="updates.mode.default",
        title="Default updates",
        description="Restore default update behavior",
        risk_tier=RiskTier.BASIC,
        reversible=True,
        detect_script=UPDATE_DEFAULT_DETECT_SCRIPT,
        run_scripts=(ScriptStep(name="default", script=UPDATE_DEFAULT_RESTORE_SCRIPT),),
        undo_scripts=(ScriptStep(name="none", script="Write-Output 'No-op'"),),
    )


def build_restore_point_operation() -> OperationDefinition:
    return OperationDefinition(
        id=RESTORE_POINT_OPERATION_ID,
        title="Create restore point",
        description="System restore point before dangerous changes",
        risk_tier=RiskTier.BASIC,
        reversible=False,
        run_scripts=(ScriptStep(name=RESTORE_POINT_STEP, script=RESTORE_POINT_SCRIPT),),
    )


# ═══════════════════════════════════════════════════════════════════
#  Selection → operations
# ═══════════════════════════════════════════════════════════════════


def _selected(items, key, wanted: list[str]):
    lowered = {w.lower() for w in wanted}
    return [item for item in items if key(item).lower() in lowered]


def build_operations(
    config: AutomationConfig,
    *,
    tweaks: list[TweakDefinition],
    fixes: list[FixDefinition],
    features: list[FeatureDefinition],
    apps: list[CatalogApp],
) -> list[OperationDefinition]:
    """Operations for a selection config, in execution order.

    Store apps, then tweaks, features and fixes, then the update mode
    (always present). Selection matching is case-insensitive.

    Raises:
        ValueError: A selected catalog entry fails sanitization.
    """
    operations: list[OperationDefinition] = []
    operations += [build_store_operation(a) for a in _selected(apps, lambda a: a.display_name, config.store_selections)]
    operations += [build_tweak_operation(t) for t in _selected(tweaks, lambda t: t.id, config.tweaks)]
    operations += [build_feature_operation(f) for f in _selected(features, lambda f: f.id, config.features)]
    operations += [build_fix_operation(f) for f in _selected(fixes, lambda f: f.id, config.fixes)]
    operations.append(build_update_mode_operation(config.update_mode))

    logger.info("Built %d operations from selection config", len(operations))
    return operations
