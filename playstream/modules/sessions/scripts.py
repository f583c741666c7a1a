"""PowerShell snippets sent to Windows DCV hosts through SSM."""
import secrets
import string
from typing import List

DCV_EXE = r"C:\Program Files\NICE\DCV\Server\bin\dcv.exe"
DCV_INSTALLER_URL = "https://d1uj6qtbmh3dt5.cloudfront.net/nice-dcv-server-x64-Release.msi"
DCV_CERT_DIR = r"C:\Windows\system32\config\systemprofile\AppData\Local\NICE\dcv\private"
CERT_STAGING_DIR = r"C:\DCV-Certs"
WIN_ACME_DIR = r"C:\win-acme"

PASSWORD_CHARSET = string.ascii_letters + string.digits + "!@#$%^&*"


def generate_password(length: int = 24) -> str:
    return "".join(secrets.choice(PASSWORD_CHARSET) for _ in range(length))


def ps_quote(value: str) -> str:
    """Single-quoted PowerShell literal."""
    return "'" + value.replace("'", "''") + "'"


def nip_domain(ip: str) -> str:
    return ip.replace(".", "-") + ".nip.io"


def session_name_for(user_id: str) -> str:
    return f"user-{user_id}-session"


def install_dcv_script() -> List[str]:
    return [
        "$ErrorActionPreference = 'Stop'",
        "[Net.ServicePointManager]::SecurityProtocol = [Net.SecurityProtocolType]::Tls12",
        r"$Installer = 'C:\Windows\Temp\nice-dcv-server.msi'",
        f"Invoke-WebRequest -Uri {ps_quote(DCV_INSTALLER_URL)} -OutFile $Installer -UseBasicParsing",
        r'Start-Process msiexec.exe -ArgumentList "/i `"$Installer`" ADDLOCAL=ALL /quiet /norestart /l*v C:\Windows\Temp\dcv_install.log" -Wait',
        "Set-Service -Name dcvserver -StartupType Automatic",
        "Start-Service -Name dcvserver",
        'Write-Host "DCV server installed"',
    ]


def create_session_script(session_name: str, owner: str) -> List[str]:
    return [
        f"& {ps_quote(DCV_EXE)} create-session --type=console --owner {ps_quote(owner)} {ps_quote(session_name)}",
        f'Write-Host "Session {session_name} created"',
    ]


def close_sessions_script() -> List[str]:
    return [
        f"$Dcv = {ps_quote(DCV_EXE)}",
        "$Sessions = & $Dcv list-sessions --json | ConvertFrom-Json",
        "foreach ($Session in $Sessions) { & $Dcv close-session $Session.id }",
        'Write-Host "Closed $(@($Sessions).Count) session(s)"',
    ]


def set_password_script(username: str, password: str) -> List[str]:
    return [
        f"$SecurePassword = ConvertTo-SecureString {ps_quote(password)} -AsPlainText -Force",
        f"$UserAccount = Get-LocalUser -Name {ps_quote(username)}",
        "$UserAccount | Set-LocalUser -Password $SecurePassword",
        'Write-Host "Password set successfully"',
    ]


def disable_ie_security_script() -> List[str]:
    return [
        r'$AdminKey = "HKLM:\SOFTWARE\Microsoft\Active Setup\Installed Components\{A509B1A7-37EF-4b3f-8CFC-4F3A74704073}"',
        r'$UserKey = "HKLM:\SOFTWARE\Microsoft\Active Setup\Installed Components\{A509B1A8-37EF-4b3f-8CFC-4F3A74704073}"',
        'Set-ItemProperty -Path $AdminKey -Name "IsInstalled" -Value 0 -Force -ErrorAction SilentlyContinue',
        'Set-ItemProperty -Path $UserKey -Name "IsInstalled" -Value 0 -Force -ErrorAction SilentlyContinue',
    ]


def fetch_acme_client_script(win_acme_url: str) -> List[str]:
    return [
        f"New-Item -ItemType Directory -Force -Path {ps_quote(WIN_ACME_DIR)} | Out-Null",
        f"New-Item -ItemType Directory -Force -Path {ps_quote(CERT_STAGING_DIR)} | Out-Null",
        "[Net.ServicePointManager]::SecurityProtocol = [Net.SecurityProtocolType]::Tls12",
        rf"if (-not (Test-Path '{WIN_ACME_DIR}\wacs.exe')) {{",
        rf"  Invoke-WebRequest -Uri {ps_quote(win_acme_url)} -OutFile '{WIN_ACME_DIR}\win-acme.zip' -UseBasicParsing",
        rf"  Expand-Archive -Path '{WIN_ACME_DIR}\win-acme.zip' -DestinationPath '{WIN_ACME_DIR}' -Force",
        "}",
        'Write-Host "win-acme ready"',
    ]


def request_certificate_script(domain: str, email: str) -> List[str]:
    return [
        'New-NetFirewallRule -DisplayName "Allow HTTP for ACME" -Direction Inbound -Protocol TCP '
        "-LocalPort 80 -Action Allow -ErrorAction SilentlyContinue | Out-Null",
        rf"& '{WIN_ACME_DIR}\wacs.exe' --source manual --host {domain} --validation selfhosting "
        rf"--store pemfiles --pemfilespath '{CERT_STAGING_DIR}' --accepttos --emailaddress {email}",
    ]


def install_certificate_script() -> List[str]:
    return [
        f"$DcvCertDir = {ps_quote(DCV_CERT_DIR)}",
        f"$CertFile = Get-ChildItem -Path {ps_quote(CERT_STAGING_DIR)} -Filter '*-crt.pem' | Select-Object -First 1",
        f"$KeyFile = Get-ChildItem -Path {ps_quote(CERT_STAGING_DIR)} -Filter '*-key.pem' | Select-Object -First 1",
        "if ($CertFile -and $KeyFile) {",
        "  New-Item -ItemType Directory -Force -Path $DcvCertDir | Out-Null",
        r'  Copy-Item -Path $CertFile.FullName -Destination "$DcvCertDir\dcv.pem" -Force',
        r'  Copy-Item -Path $KeyFile.FullName -Destination "$DcvCertDir\dcv.key" -Force',
        "  Restart-Service dcvserver -Force",
        '  Write-Host "SSL configured and DCV restarted"',
        "} else {",
        '  Write-Host "Certificate files not found"',
        "}",
    ]


def windows_user_data(password: str, username: str = "Administrator") -> str:
    """First-boot script: set the account password and make sure dcvserver runs."""
    lines = [
        "<powershell>",
        r'$LogFile = "C:\ProgramData\Playstream\startup.log"',
        r'New-Item -ItemType Directory -Force -Path "C:\ProgramData\Playstream" | Out-Null',
        "try {",
        *("    " + line for line in set_password_script(username, password)[:3]),
        '    "$(Get-Date) - Account password set" | Out-File -Append $LogFile',
        "} catch {",
        '    "$(Get-Date) - Failed to set account password: $_" | Out-File -Append $LogFile',
        "}",
        "try {",
        '    $DcvService = Get-Service -Name "dcvserver" -ErrorAction SilentlyContinue',
        "    if ($DcvService -and $DcvService.Status -ne 'Running') { Start-Service -Name dcvserver }",
        '    "$(Get-Date) - DCV server checked" | Out-File -Append $LogFile',
        "} catch {",
        '    "$(Get-Date) - Error managing DCV service: $_" | Out-File -Append $LogFile',
        "}",
        "try {",
        *("    " + line for line in disable_ie_security_script()),
        "} catch {",
        '    "$(Get-Date) - Error disabling IE ESC: $_" | Out-File -Append $LogFile',
        "}",
        '"$(Get-Date) - Startup script completed" | Out-File -Append $LogFile',
        "</powershell>",
        "<persist>true</persist>",
    ]
    return "\n".join(lines)
