"""
Built-in tweak catalog.

Shipped with the package so a fresh install has a working tweak list
even without ``Data/tweaks.json``. Entries on disk with the same id
take precedence (see ``config.loader.load_tweaks``).

Scripts are dedented and stripped; their hashes seed the catalog
allowlist, so any edit here changes what the validator trusts.
"""

from __future__ import annotations

import textwrap

from tweakguard.core.models.catalog import TweakDefinition
from tweakguard.core.models.operation import RiskTier


def _script(body: str) -> str:
    return textwrap.dedent(body).strip()


def _t(
    id: str,
    name: str,
    description: str,
    risk_tier: RiskTier,
    scope: str,
    reversible: bool,
    detect: str,
    apply: str,
    undo: str,
    destructive: bool = False,
) -> TweakDefinition:
    return TweakDefinition(
        id=id,
        name=name,
        description=description,
        risk_tier=risk_tier,
        scope=scope,
        reversible=reversible,
        destructive=destructive,
        detect_script=_script(detect),
        apply_script=_script(apply),
        undo_script=_script(undo),
    )


BUILTIN_TWEAKS: tuple[TweakDefinition, ...] = (
    _t(
        "center-taskbar-items", "Center taskbar items", "Centers taskbar buttons/icons.",
        RiskTier.BASIC, "HKCU", True,
        r"""
        $p='HKCU:\Software\Microsoft\Windows\CurrentVersion\Explorer\Advanced'
        if((Get-ItemProperty -Path $p -Name TaskbarAl -ErrorAction Stop).TaskbarAl -eq 1){'Applied'} else {'Not Applied'}
        """,
        r"""
        Set-ItemProperty -Path 'HKCU:\Software\Microsoft\Windows\CurrentVersion\Explorer\Advanced' -Name TaskbarAl -Type DWord -Value 1
        """,
        r"""
        Set-ItemProperty -Path 'HKCU:\Software\Microsoft\Windows\CurrentVersion\Explorer\Advanced' -Name TaskbarAl -Type DWord -Value 0
        """,
    ),
    _t(
        "disable-cross-device-resume", "Cross-Device Resume",
        "Disables Shared Experiences / cross-device resume.",
        RiskTier.BASIC, "HKCU", True,
        r"""
        $p='HKCU:\Software\Microsoft\Windows\CurrentVersion\CDP'
        $a=(Get-ItemProperty -Path $p -Name CdpSessionUserAuthzPolicy -ErrorAction Stop).CdpSessionUserAuthzPolicy
        $b=(Get-ItemProperty -Path $p -Name RomeSdkChannelUserAuthzPolicy -ErrorAction Stop).RomeSdkChannelUserAuthzPolicy
        if($a -eq 0 -and $b -eq 0){'Applied'} else {'Not Applied'}
        """,
        r"""
        New-Item -Path 'HKCU:\Software\Microsoft\Windows\CurrentVersion\CDP' -Force | Out-Null
        Set-ItemProperty -Path 'HKCU:\Software\Microsoft\Windows\CurrentVersion\CDP' -Name CdpSessionUserAuthzPolicy -Type DWord -Value 0
        Set-ItemProperty -Path 'HKCU:\Software\Microsoft\Windows\CurrentVersion\CDP' -Name RomeSdkChannelUserAuthzPolicy -Type DWord -Value 0
        """,
        r"""
        Set-ItemProperty -Path 'HKCU:\Software\Microsoft\Windows\CurrentVersion\CDP' -Name CdpSessionUserAuthzPolicy -Type DWord -Value 1
        Set-ItemProperty -Path 'HKCU:\Software\Microsoft\Windows\CurrentVersion\CDP' -Name RomeSdkChannelUserAuthzPolicy -Type DWord -Value 1
        """,
    ),
    _t(
        "dark-theme-windows", "Dark Theme for Windows", "Forces dark mode for apps and system.",
        RiskTier.BASIC, "HKCU", True,
        r"""
        $p='HKCU:\Software\Microsoft\Windows\CurrentVersion\Themes\Personalize'
        $a=(Get-ItemProperty -Path $p -Name AppsUseLightTheme -ErrorAction Stop).AppsUseLightTheme
        $b=(Get-ItemProperty -Path $p -Name SystemUsesLightTheme -ErrorAction Stop).SystemUsesLightTheme
        if($a -eq 0 -and $b -eq 0){'Applied'} else {'Not Applied'}
        """,
        r"""
        New-Item -Path 'HKCU:\Software\Microsoft\Windows\CurrentVersion\Themes\Personalize' -Force | Out-Null
        Set-ItemProperty -Path 'HKCU:\Software\Microsoft\Windows\CurrentVersion\Themes\Personalize' -Name AppsUseLightTheme -Type DWord -Value 0
        Set-ItemProperty -Path 'HKCU:\Software\Microsoft\Windows\CurrentVersion\Themes\Personalize' -Name SystemUsesLightTheme -Type DWord -Value 0
        """,
        r"""
        New-Item -Path 'HKCU:\Software\Microsoft\Windows\CurrentVersion\Themes\Personalize' -Force | Out-Null
        Set-ItemProperty -Path 'HKCU:\Software\Microsoft\Windows\CurrentVersion\Themes\Personalize' -Name AppsUseLightTheme -Type DWord -Value 1
        Set-ItemProperty -Path 'HKCU:\Software\Microsoft\Windows\CurrentVersion\Themes\Personalize' -Name SystemUsesLightTheme -Type DWord -Value 1
        """,
    ),
    _t(
        "detailed-bsod", "Detailed BSoD", "Shows detailed parameters on stop errors.",
        RiskTier.ADVANCED, "HKLM", True,
        r"""
        $p='HKLM:\SYSTEM\CurrentControlSet\Control\CrashControl'
        if((Get-ItemProperty -Path $p -Name DisplayParameters -ErrorAction Stop).DisplayParameters -eq 1){'Applied'} else {'Not Applied'}
        """,
        r"""
        New-Item -Path 'HKLM:\SYSTEM\CurrentControlSet\Control\CrashControl' -Force | Out-Null
        Set-ItemProperty -Path 'HKLM:\SYSTEM\CurrentControlSet\Control\CrashControl' -Name DisplayParameters -Type DWord -Value 1
        """,
        r"""
        Set-ItemProperty -Path 'HKLM:\SYSTEM\CurrentControlSet\Control\CrashControl' -Name DisplayParameters -Type DWord -Value 0
        """,
    ),
    _t(
        "disable-multiplane-overlay", "Disable Multiplane Overlay",
        "Disables MPO to mitigate flickering/rendering issues.",
        RiskTier.ADVANCED, "HKLM", True,
        r"""
        $p='HKLM:\SOFTWARE\Microsoft\Windows\Dwm'
        if((Get-ItemProperty -Path $p -Name OverlayTestMode -ErrorAction Stop).OverlayTestMode -eq 5){'Applied'} else {'Not Applied'}
        """,
        r"""
        New-Item -Path 'HKLM:\SOFTWARE\Microsoft\Windows\Dwm' -Force | Out-Null
        Set-ItemProperty -Path 'HKLM:\SOFTWARE\Microsoft\Windows\Dwm' -Name OverlayTestMode -Type DWord -Value 5
        """,
        r"""
        Remove-ItemProperty -Path 'HKLM:\SOFTWARE\Microsoft\Windows\Dwm' -Name OverlayTestMode -ErrorAction Stop
        """,
    ),
    _t(
        "disable-mouse-acceleration", "Mouse Acceleration", "Disables enhanced pointer precision.",
        RiskTier.BASIC, "HKCU", True,
        r"""
        $p='HKCU:\Control Panel\Mouse'
        $a=(Get-ItemProperty -Path $p -Name MouseSpeed -ErrorAction Stop).MouseSpeed
        $b=(Get-ItemProperty -Path $p -Name MouseThreshold1 -ErrorAction Stop).MouseThreshold1
        $c=(Get-ItemProperty -Path $p -Name MouseThreshold2 -ErrorAction Stop).MouseThreshold2
        if($a -eq '0' -and $b -eq '0' -and $c -eq '0'){'Applied'} else {'Not Applied'}
        """,
        r"""
        Set-ItemProperty -Path 'HKCU:\Control Panel\Mouse' -Name MouseSpeed -Value '0'
        Set-ItemProperty -Path 'HKCU:\Control Panel\Mouse' -Name MouseThreshold1 -Value '0'
        Set-ItemProperty -Path 'HKCU:\Control Panel\Mouse' -Name MouseThreshold2 -Value '0'
        """,
        r"""
        Set-ItemProperty -Path 'HKCU:\Control Panel\Mouse' -Name MouseSpeed -Value '1'
        Set-ItemProperty -Path 'HKCU:\Control Panel\Mouse' -Name MouseThreshold1 -Value '6'
        Set-ItemProperty -Path 'HKCU:\Control Panel\Mouse' -Name MouseThreshold2 -Value '10'
        """,
    ),
    _t(
        "numlock-on-startup", "NumLock on Startup", "Turns NumLock on at sign-in.",
        RiskTier.BASIC, "HKU", True,
        r"""
        $p='Registry::HKEY_USERS\.DEFAULT\Control Panel\Keyboard'
        if((Get-ItemProperty -Path $p -Name InitialKeyboardIndicators -ErrorAction Stop).InitialKeyboardIndicators -eq '2'){'Applied'} else {'Not Applied'}
        """,
        r"""
        Set-ItemProperty -Path 'Registry::HKEY_USERS\.DEFAULT\Control Panel\Keyboard' -Name InitialKeyboardIndicators -Value '2'
        """,
        r"""
        Set-ItemProperty -Path 'Registry::HKEY_USERS\.DEFAULT\Control Panel\Keyboard' -Name InitialKeyboardIndicators -Value '0'
        """,
    ),
    _t(
        "disable-sticky-keys", "Sticky Keys", "Disables Sticky Keys keyboard shortcut prompts.",
        RiskTier.BASIC, "HKCU", True,
        r"""
        $p='HKCU:\Control Panel\Accessibility\StickyKeys'
        if((Get-ItemProperty -Path $p -Name Flags -ErrorAction Stop).Flags -eq '506'){'Applied'} else {'Not Applied'}
        """,
        r"""
        Set-ItemProperty -Path 'HKCU:\Control Panel\Accessibility\StickyKeys' -Name Flags -Value '506'
        """,
        r"""
        Set-ItemProperty -Path 'HKCU:\Control Panel\Accessibility\StickyKeys' -Name Flags -Value '510'
        """,
    ),
    _t(
        "verbose-messages-during-logon", "Verbose Messages During Logon",
        "Shows detailed status during sign-in and startup.",
        RiskTier.ADVANCED, "HKLM", True,
        r"""
        $p='HKLM:\SOFTWARE\Microsoft\Windows\CurrentVersion\Policies\System'
        if((Get-ItemProperty -Path $p -Name VerboseStatus -ErrorAction Stop).VerboseStatus -eq 1){'Applied'} else {'Not Applied'}
        """,
        r"""
        New-Item -Path 'HKLM:\SOFTWARE\Microsoft\Windows\CurrentVersion\Policies\System' -Force | Out-Null
        Set-ItemProperty -Path 'HKLM:\SOFTWARE\Microsoft\Windows\CurrentVersion\Policies\System' -Name VerboseStatus -Type DWord -Value 1
        """,
        r"""
        Remove-ItemProperty -Path 'HKLM:\SOFTWARE\Microsoft\Windows\CurrentVersion\Policies\System' -Name VerboseStatus -ErrorAction Stop
        """,
    ),
    _t(
        "add-ultimate-performance-profile", "Add and Activate Ultimate Performance Profile",
        "Adds and sets Ultimate Performance plan.",
        RiskTier.ADVANCED, "System", True,
        r"""
        $guid='e9a42b02-d5df-448d-aa00-03f14749eb61'
        $active = (powercfg /GetActiveScheme 2>$null | Out-String)
        if($active -match $guid -or $active -match 'Ultimate Performance'){'Applied'} else {'Not Applied'}
        """,
        r"""
        $templateGuid='e9a42b02-d5df-448d-aa00-03f14749eb61'
        $ultimateGuid = $null
        $plans = (powercfg /L 2>$null | Out-String)
        $ultimateLine = ($plans -split "`r?`n" | Where-Object { $_ -match 'Ultimate Performance' } | Select-Object -First 1)
        if($ultimateLine -and $ultimateLine -match '([0-9a-fA-F\-]{36})'){
          $ultimateGuid = $matches[1]
        }

        if(-not $ultimateGuid){
          $dupOut = (powercfg -duplicatescheme $templateGuid 2>&1 | Out-String)
          $plans = (powercfg /L 2>$null | Out-String)
          $ultimateLine = ($plans -split "`r?`n" | Where-Object { $_ -match 'Ultimate Performance' } | Select-Object -First 1)
          if($ultimateLine -and $ultimateLine -match '([0-9a-fA-F\-]{36})'){
            $ultimateGuid = $matches[1]
          } elseif($dupOut -match '([0-9a-fA-F\-]{36})') {
            $ultimateGuid = $matches[1]
          }
        }

        if(-not $ultimateGuid){
          throw "Ultimate Performance plan is unavailable on this system."
        }

        $setOut = (powercfg /setactive $ultimateGuid 2>&1 | Out-String)
        $activeNow = (powercfg /GetActiveScheme 2>$null | Out-String)
        if($activeNow -match $ultimateGuid -or $activeNow -match 'Ultimate Performance'){
          Write-Output 'Applied'
          return
        }
        throw ("Failed to activate Ultimate Performance plan. " + $setOut.Trim())
        """,
        r"""
        powercfg /setactive SCHEME_BALANCED 2>$null | Out-Null
        """,
    ),
    _t(
        "create-restore-point", "Create Restore Point", "Creates a system restore point.",
        RiskTier.ADVANCED, "System", False,
        r"""
        try {
          $existing = Get-ComputerRestorePoint -ErrorAction Stop | Where-Object { $_.Description -eq 'Tweakguard tweak restore point' } | Select-Object -First 1
          if ($null -ne $existing) { 'Applied' } else { 'Not Applied' }
        } catch {
          'Not Applied'
        }
        """,
        r"""
        $existing = $null
        try {
          $existing = Get-ComputerRestorePoint -ErrorAction Stop | Where-Object { $_.Description -eq 'Tweakguard tweak restore point' } | Select-Object -First 1
        } catch {}
        if ($null -ne $existing) {
          Write-Output 'Applied'
          return
        }
        Enable-ComputerRestore -Drive "$($env:SystemDrive)\" -ErrorAction Continue
        Checkpoint-Computer -Description 'Tweakguard tweak restore point' -RestorePointType MODIFY_SETTINGS -ErrorAction Stop
        Write-Output 'Applied'
        """,
        "Write-Output 'No undo action for restore point creation.'",
    ),
    _t(
        "delete-temporary-files", "Delete Temporary Files",
        "Deletes temporary files from common temp locations.",
        RiskTier.ADVANCED, "System", False,
        "'Not Applied'",
        r"""
        $targets=@($env:TEMP, "$env:SystemRoot\Temp")
        foreach($t in $targets){
          if(Test-Path $t){
            Get-ChildItem -Path $t -Force -ErrorAction Continue | Remove-Item -Recurse -Force -ErrorAction Continue
          }
        }
        Write-Output 'Temporary files cleanup attempted.'
        """,
        "Write-Output 'No undo action for temporary file deletion.'",
        destructive=True,
    ),
    _t(
        "enable-network-rss", "Receive Side Scaling", "Enables RSS on the primary active adapter.",
        RiskTier.ADVANCED, "System", True,
        r"""
        $adapter=Get-NetAdapter | Where-Object { $_.Status -eq 'Up' -and -not $_.Virtual } | Sort-Object InterfaceMetric | Select-Object -First 1
        if($null -eq $adapter){'Not Applied'; return}
        $rss=Get-NetAdapterRss -Name $adapter.Name -ErrorAction Stop
        if($rss.Enabled){'Applied'} else {'Not Applied'}
        """,
        r"""
        $adapter=Get-NetAdapter | Where-Object { $_.Status -eq 'Up' -and -not $_.Virtual } | Sort-Object InterfaceMetric | Select-Object -First 1
        if($null -eq $adapter){$adapter=Get-NetAdapter | Where-Object { $_.Status -eq 'Up' } | Select-Object -First 1}
        if($null -eq $adapter){throw 'No active network adapter found.'}
        Set-NetAdapterRss -Name $adapter.Name -Enabled $true -ErrorAction Stop
        """,
        r"""
        $adapter=Get-NetAdapter | Where-Object { $_.Status -eq 'Up' -and -not $_.Virtual } | Sort-Object InterfaceMetric | Select-Object -First 1
        if($null -eq $adapter){$adapter=Get-NetAdapter | Where-Object { $_.Status -eq 'Up' } | Select-Object -First 1}
        if($null -eq $adapter){throw 'No active network adapter found.'}
        Set-NetAdapterRss -Name $adapter.Name -Enabled $false -ErrorAction Stop
        """,
    ),
)
