"""Pre-flight readiness checks for driver commands.

Validates prerequisites before touching infrastructure:
- External tools on PATH (tofu, docker, aws)
- Base credential present
- State backend reachable
- Registry API reachable
"""

import logging
import os
import shutil
from pathlib import Path

import requests
import urllib3

from actions.registry import RegistryClient
from config import DriverConfig

logger = logging.getLogger(__name__)

# Tools needed per command
COMMAND_TOOLS = {
    'plan': [],
    'apply': ['tofu'],
    'publish': ['docker'],
    'deploy': ['tofu', 'docker', 'aws'],
    'rollback': ['aws'],
    'shell': ['aws'],
}


def validate_tool(tool: str) -> tuple[bool, str]:
    """Check that an executable is on PATH."""
    path = shutil.which(tool)
    if path:
        return True, f"{tool} found at {path}"
    return False, f"'{tool}' not found on PATH"


def validate_base_credential(config: DriverConfig) -> tuple[bool, str]:
    """Check a base credential is configured for scope derivation."""
    if config.get_base_credential():
        return True, "Base credential present"
    return False, (
        "No base credential configured. "
        "Set auth.signing_key in secrets.yaml or DEPLOY_DRIVER_BASE_CREDENTIAL."
    )


def validate_state_backend(config: DriverConfig) -> tuple[bool, str]:
    """Check the state backend can be reached (http) or written (local)."""
    state = config.state
    if state.backend == 'local':
        path = Path(state.path)
        target = path if path.exists() else path.parent
        if os.access(target, os.W_OK):
            return True, f"State directory {path} writable"
        return False, f"State directory {path} is not writable"

    if state.insecure:
        urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
    try:
        resp = requests.get(state.address, timeout=10, verify=not state.insecure)
    except requests.exceptions.ConnectionError as e:
        return False, f"Cannot connect to state backend {state.address}: {e}"
    except requests.exceptions.Timeout:
        return False, f"Timeout connecting to state backend {state.address}"
    if resp.status_code >= 500:
        return False, f"State backend error: {resp.status_code} - {resp.text[:100]}"
    return True, f"State backend {state.address} reachable"


def validate_registry(config: DriverConfig) -> tuple[bool, str]:
    """Check the registry API answers GET /v2/."""
    if not config.registry.url:
        return False, "No registry.url configured in deploy.yaml"
    return RegistryClient(config.registry).ping()


def run_preflight_checks(config: DriverConfig, command: str) -> list[tuple[str, bool, str]]:
    """Run the checks relevant to command.

    Returns:
        List of (check name, ok, message)
    """
    results = []
    for tool in COMMAND_TOOLS.get(command, []):
        results.append((f'tool:{tool}', *validate_tool(tool)))
    results.append(('credential', *validate_base_credential(config)))
    results.append(('state', *validate_state_backend(config)))
    if command in ('publish', 'deploy'):
        results.append(('registry', *validate_registry(config)))
    return results


def format_preflight_results(results: list[tuple[str, bool, str]]) -> str:
    lines = []
    for name, ok, message in results:
        mark = '✓' if ok else '✗'
        lines.append(f"  {mark} {name}: {message}")
    return '\n'.join(lines)
