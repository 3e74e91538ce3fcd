"""Pre-flight and post-apply verification.

Pre-flight checks run before plan/apply and catch a missing or logged-out
az CLI early. Post-apply checks confirm the deployed stack behaves as
declared:

- NSG rules read back with the declared access, direction and ports
- Virtual machines accept SSH connections
- Virtual machines answer HTTPS (web server bootstrapped by cloud-init)
- Diagnostic settings exist

Each failed check carries a remediation hint for the operator.
"""

import logging
import shutil
import socket
from dataclasses import dataclass
from typing import Optional

import requests
import urllib3

from common import run_command
from config import ProfileConfig
from engine.state import StackState
from providers.base import ProviderError
from stack import Stack

# Suppress SSL warnings for self-signed certs
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

logger = logging.getLogger(__name__)

SSH_HINT = (
    "Check that an NSG rule allows TCP 22 inbound from your address "
    "(az network nsg rule list -g <rg> --nsg-name <nsg> -o table) and that "
    "the NIC or subnet is associated with that NSG."
)

WEB_HINT = (
    "The web server is not answering. SSH to the VM and inspect "
    "/var/log/cloud-init-output.log, then run: sudo systemctl status nginx"
)

DIAGNOSTICS_HINT = (
    "Confirm the Log Analytics workspace exists "
    "(az monitor log-analytics workspace show -g <rg> --workspace-name <ws>) "
    "and that the diagnostic target is the full resource id of the VM."
)

RULE_HINT = (
    "Re-apply the stack, or inspect the live rule with: "
    "az network nsg rule show -g <rg> --nsg-name <nsg> -n <rule>"
)


@dataclass
class CheckResult:
    """Outcome of one verification check."""
    name: str
    ok: bool
    message: str
    hint: str = ''

    def to_dict(self) -> dict:
        d = {'name': self.name, 'ok': self.ok, 'message': self.message}
        if self.hint and not self.ok:
            d['hint'] = self.hint
        return d


# -----------------------------------------------------------------------------
# Pre-flight
# -----------------------------------------------------------------------------

def validate_preflight(config: ProfileConfig) -> list[str]:
    """Check the az CLI is installed and logged in.

    Returns:
        List of error messages (empty if ready)
    """
    if config.is_local:
        return []

    errors = []
    if shutil.which(config.az_path) is None:
        errors.append(
            f"az CLI not found ('{config.az_path}')\n"
            f"  Install: https://learn.microsoft.com/cli/azure/install-azure-cli"
        )
        return errors

    cmd = [config.az_path, 'account', 'show', '--output', 'json']
    if config.subscription:
        cmd += ['--subscription', config.subscription]
    rc, _, err = run_command(cmd, timeout=60)
    if rc != 0:
        errors.append(
            f"az CLI is not logged in for profile '{config.name}'\n"
            f"  Run: az login"
            + (f"\n  Detail: {err.strip()[:200]}" if err.strip() else '')
        )
    return errors


# -----------------------------------------------------------------------------
# Post-apply checks
# -----------------------------------------------------------------------------

def check_ssh(host: str, port: int = 22, timeout: float = 5.0) -> tuple[bool, str]:
    """Check that host accepts TCP connections on port."""
    try:
        sock = socket.create_connection((host, port), timeout=timeout)
        sock.close()
        return True, f"Host {host} reachable on port {port}"
    except socket.timeout:
        return False, f"Timeout connecting to {host}:{port}"
    except socket.error as e:
        return False, f"Cannot connect to {host}:{port}: {e}"


def check_https(host: str, timeout: float = 10.0) -> tuple[bool, str]:
    """Check that host answers HTTPS with a non-server-error status."""
    url = f"https://{host}/"
    try:
        resp = requests.get(url, verify=False, timeout=timeout)  # Self-signed cert
    except requests.exceptions.ConnectionError as e:
        return False, f"Cannot connect to {url}: {e}"
    except requests.exceptions.Timeout:
        return False, f"Timeout connecting to {url}"

    if resp.status_code < 500:
        return True, f"{url} answered with HTTP {resp.status_code}"
    return False, f"{url} answered with HTTP {resp.status_code}"


def _ports_match(declared, live) -> bool:
    declared_ports = declared if isinstance(declared, list) else [declared]
    return sorted(str(p) for p in declared_ports) == sorted(str(p) for p in (live or []))


def check_nsg_rules(stack: Stack, provider, state: StackState) -> list[CheckResult]:
    """Read every nsg_rule back and compare it with the declaration."""
    results = []
    for resource in stack.resources:
        if resource.type != 'nsg_rule':
            continue
        name = f"nsg-rule:{resource.name}"
        rs = state.live_resources.get(resource.name)
        if rs is None:
            results.append(CheckResult(name, False, "not applied", RULE_HINT))
            continue
        try:
            live = provider.read(resource.name, resource.type, rs.properties)
        except ProviderError as e:
            results.append(CheckResult(name, False, f"read failed: {e}", RULE_HINT))
            continue
        if live is None:
            results.append(CheckResult(name, False, "missing in cloud", RULE_HINT))
            continue

        declared = rs.properties
        problems = []
        for key in ('access', 'direction'):
            if live.get(key) is not None and str(live[key]).lower() != str(declared.get(key)).lower():
                problems.append(f"{key}={live[key]} (declared {declared.get(key)})")
        if not _ports_match(declared.get('ports'), live.get('ports')):
            problems.append(f"ports={live.get('ports')} (declared {declared.get('ports')})")

        if problems:
            results.append(CheckResult(name, False, '; '.join(problems), RULE_HINT))
        else:
            ports = ', '.join(str(p) for p in live.get('ports') or [])
            results.append(CheckResult(
                name, True, f"{live.get('access')}/{live.get('direction')} ports {ports}",
            ))
    return results


def check_diagnostics(stack: Stack, provider, state: StackState) -> list[CheckResult]:
    """Read every diagnostic_setting back."""
    results = []
    for resource in stack.resources:
        if resource.type != 'diagnostic_setting':
            continue
        name = f"diagnostics:{resource.name}"
        rs = state.live_resources.get(resource.name)
        if rs is None:
            results.append(CheckResult(name, False, "not applied", DIAGNOSTICS_HINT))
            continue
        try:
            live = provider.read(resource.name, resource.type, rs.properties)
        except ProviderError as e:
            results.append(CheckResult(name, False, f"read failed: {e}", DIAGNOSTICS_HINT))
            continue
        if live is None:
            results.append(CheckResult(name, False, "missing in cloud", DIAGNOSTICS_HINT))
        else:
            results.append(CheckResult(name, True, f"sending to {rs.properties.get('workspace')}"))
    return results


def _vm_public_ip(state: StackState, name: str) -> Optional[str]:
    rs = state.live_resources.get(name)
    if rs is None:
        return None
    ip = rs.outputs.get('public_ip')
    if isinstance(ip, str) and ',' in ip:
        ip = ip.split(',')[0].strip()
    return ip or None


def verify_stack(
    stack: Stack,
    provider,
    state: StackState,
    check_network: bool = True,
    timeout: float = 10.0,
) -> list[CheckResult]:
    """Run all post-apply checks for a stack.

    Args:
        check_network: Probe SSH/HTTPS on VM public IPs (disabled for the
            local provider, whose addresses are synthetic)
    """
    results = check_nsg_rules(stack, provider, state)

    if check_network:
        for resource in stack.resources:
            if resource.type != 'virtual_machine':
                continue
            ip = _vm_public_ip(state, resource.name)
            if not ip:
                results.append(CheckResult(
                    f"address:{resource.name}", False, "no public IP recorded",
                    "Attach a public_ip to the VM's NIC and re-apply.",
                ))
                continue
            if stack.settings.verify_ssh:
                ok, msg = check_ssh(ip, timeout=timeout)
                results.append(CheckResult(f"ssh:{resource.name}", ok, msg, SSH_HINT))
            if stack.settings.verify_https:
                ok, msg = check_https(ip, timeout=timeout)
                results.append(CheckResult(f"https:{resource.name}", ok, msg, WEB_HINT))

    results.extend(check_diagnostics(stack, provider, state))

    for result in results:
        if result.ok:
            logger.info(f"[verify] {result.name}: {result.message}")
        else:
            logger.error(f"[verify] {result.name}: {result.message}")
    return results
