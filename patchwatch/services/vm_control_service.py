"""Service for issuing remediation commands to virtual machines via the Azure CLI."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from ..core.config import Settings, settings
from ..core.models import CommandKind, MachineIdentifier
from .az_cli_service import AzCliError, AzCliService, ProcessCallback, az_cli_service

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class VMActionResult:
    """Result payload for an accepted remediation command."""

    stdout: str
    stderr: str


class VMControlError(RuntimeError):
    """Raised when a remediation command is rejected or fails."""

    def __init__(self, action: str, machine: MachineIdentifier, message: str):
        super().__init__(message)
        self.action = action
        self.machine = machine
        self.message = message


class VMControlService:
    """Submit fire-and-forget `az vm` commands for single machines."""

    def __init__(
        self,
        cli: Optional[AzCliService] = None,
        config: Optional[Settings] = None,
    ) -> None:
        self._cli = cli or az_cli_service
        self._settings = config or settings

    async def start_vm(self, machine: MachineIdentifier) -> VMActionResult:
        """Start a deallocated virtual machine."""

        return await self.run_command(CommandKind.START, machine)

    async def restart_vm(self, machine: MachineIdentifier) -> VMActionResult:
        return await self.run_command(CommandKind.RESTART, machine)

    async def install_updates(self, machine: MachineIdentifier) -> VMActionResult:
        """Start a patch installation using the configured classifications."""

        return await self.run_command(CommandKind.INSTALL_UPDATES, machine)

    async def assess_patches(self, machine: MachineIdentifier) -> VMActionResult:
        return await self.run_command(CommandKind.TRIGGER_ASSESSMENT, machine)

    async def run_command(
        self,
        kind: CommandKind,
        machine: MachineIdentifier,
        on_spawn: Optional[ProcessCallback] = None,
    ) -> VMActionResult:
        """Submit ``kind`` for ``machine`` and return once the backend accepts it."""

        if not machine.is_valid:
            raise VMControlError(
                kind.label,
                machine,
                "Machine identifier is incomplete; command not submitted",
            )

        args = self.build_arguments(kind, machine)
        logger.info(
            "Submitting %s for VM %s in %s", kind.label, machine.machine_name, machine.resource_group
        )
        try:
            result = await self._cli.run(
                args,
                timeout=self._settings.command_timeout_seconds,
                on_spawn=on_spawn,
            )
        except AzCliError as exc:
            logger.error(
                "Azure CLI error while submitting %s for %s: %s",
                kind.label,
                machine.machine_name,
                exc.message,
            )
            raise VMControlError(
                kind.label,
                machine,
                f"Azure CLI invocation failed: {exc.message}",
            ) from exc

        if result.returncode != 0:
            logger.error(
                "Command %s for VM %s (group %s) exited with %s",
                kind.label,
                machine.machine_name,
                machine.resource_group,
                result.returncode,
            )
            preview = result.stderr.strip() or result.stdout.strip()
            message = preview[:500] if preview else "Unknown error"
            raise VMControlError(kind.label, machine, message)

        logger.info("Command %s accepted for %s", kind.label, machine.machine_name)
        return VMActionResult(stdout=result.stdout, stderr=result.stderr)

    def build_arguments(self, kind: CommandKind, machine: MachineIdentifier) -> List[str]:
        """Build the ``az vm`` argument list for one submission."""

        args = [
            "vm",
            kind.value,
            "--subscription",
            machine.subscription_id,
            "--resource-group",
            machine.resource_group,
            "--name",
            machine.machine_name,
        ]
        if kind == CommandKind.INSTALL_UPDATES:
            flag = (
                "--classifications-to-include-linux"
                if self._settings.is_linux()
                else "--classifications-to-include-win"
            )
            args.append(flag)
            args.extend(self._settings.get_install_classifications())
            args.extend(
                [
                    "--maximum-duration",
                    self._settings.install_max_duration,
                    "--reboot-setting",
                    self._settings.install_reboot_setting,
                ]
            )
        args.append("--no-wait")
        return args


# Global service instance
vm_control_service = VMControlService()

__all__ = [
    "VMActionResult",
    "VMControlError",
    "VMControlService",
    "vm_control_service",
]
