# facts.py
# Fact table, placeholder substitution and fact discovery.
#
# Facts enter the table from two places only:
#   the user's query       — seed_from_query(), once per query
#   a finished step output — extract_output_facts(), after each success

import logging
import re
import sys

from shell_planner.models import Step

logger = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"\{([a-zA-Z0-9_]+)\}")
CIDR_RE = re.compile(r"\b((?:[0-9]{1,3}\.){3}[0-9]{1,3}/\d{1,2})\b")
IP_RE = re.compile(r"\b((?:[0-9]{1,3}\.){3}[0-9]{1,3})\b")

WINDOWS_GATEWAY_RE = re.compile(r"Default Gateway.*: ([0-9]+\.[0-9]+\.[0-9]+\.[0-9]+)")
LINUX_GATEWAY_RE = re.compile(r"default via ([0-9]+\.[0-9]+\.[0-9]+\.[0-9]+)")
MACOS_GATEWAY_RE = re.compile(r"gateway: ([0-9]+\.[0-9]+\.[0-9]+\.[0-9]+)")

GATEWAY_PURPOSES = ("find default gateway", "find router")


class MissingFactError(Exception):
    """Raised when a command template references a fact nobody discovered."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Required information '{name}' for command not found from previous steps.")
        self.name = name


class FactTable(dict[str, str]):
    """Discovered name -> value strings. Last write wins."""

    def record(self, name: str, value: str) -> None:
        logger.info(">>> Discovered %s: %s", name, value)
        self[name] = value


def substitute_placeholders(template: str, facts: dict[str, str]) -> str:
    """
    Replace every ``{name}`` in ``template`` with its fact value.

    Fails on the first name with no value; nothing is partially resolved.
    """
    names = list(dict.fromkeys(PLACEHOLDER_RE.findall(template)))
    if not names:
        return template

    logger.debug("Substituting placeholders in %r: %s", template, names)
    resolved = template
    for name in names:
        if name not in facts:
            logger.debug("Placeholder {%s} not found in facts: %s", name, dict(facts))
            raise MissingFactError(name)
        resolved = resolved.replace(f"{{{name}}}", facts[name])
    return resolved


def seed_from_query(query: str, facts: FactTable) -> None:
    """Seed ``subnet_cidr`` or, failing that, ``target_ip`` from the raw query."""
    cidr = CIDR_RE.search(query)
    if cidr:
        facts.record("subnet_cidr", cidr.group(1))
        return

    ip = IP_RE.search(query)
    if ip:
        facts.record("target_ip", ip.group(1))


def _find_gateway(output: str, windows: bool) -> str | None:
    if windows:
        for line in output.splitlines():
            match = WINDOWS_GATEWAY_RE.search(line)
            if match:
                return match.group(1)
        return None

    match = LINUX_GATEWAY_RE.search(output) or MACOS_GATEWAY_RE.search(output)
    return match.group(1) if match else None


def extract_output_facts(
    step: Step,
    output: str,
    facts: FactTable,
    windows: bool = sys.platform == "win32",
) -> None:
    purpose = (step.purpose or "").lower()
    if not any(phrase in purpose for phrase in GATEWAY_PURPOSES):
        return

    gateway = _find_gateway(output, windows)
    if gateway is None:
        logger.warning(
            "Could not parse default gateway from output for step %d. Full output was:\n%s",
            step.step,
            output,
        )
        return
    if gateway == "0.0.0.0":
        logger.warning("Parsed gateway IP was 0.0.0.0, ignoring.")
        return

    facts.record("default_gateway", gateway)
