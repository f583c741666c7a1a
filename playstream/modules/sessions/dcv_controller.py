import logging
from typing import Optional
from urllib.parse import quote

from playstream.config import settings
from playstream.core.errors import ResourceNotFound
from playstream.modules.commands.ssm_executor import CommandExecutor
from playstream.modules.instances.ec2_manager import InstanceManager
from playstream.modules.sessions import scripts
from playstream.modules.sessions.schemas import SessionEndpoint, StopSessionResult, TlsConfigResult

logger = logging.getLogger(__name__)

DCV_CONFIGURED_TAG = "dcvConfigured"


class SessionController:
    """Installs and configures the DCV server on an instance and manages its sessions."""

    def __init__(
        self,
        commands: CommandExecutor,
        instances: InstanceManager,
        dcv_port: Optional[int] = None,
        dcv_user: Optional[str] = None,
    ):
        self.commands = commands
        self.instances = instances
        self.dcv_port = dcv_port or settings.dcv_port
        self.dcv_user = dcv_user or settings.dcv_user

    def ensure_session_ready(self, instance_id: str, user_id: str) -> SessionEndpoint:
        """Install DCV if the instance is not tagged as configured, then open the user's session."""
        if self.instances.get_tag(instance_id, DCV_CONFIGURED_TAG) != "true":
            self.install_dcv(instance_id)

        session_id = scripts.session_name_for(user_id)
        logger.info(f"Creating DCV session {session_id} on {instance_id}")
        self.commands.run_and_wait(
            instance_id,
            scripts.create_session_script(session_id, self.dcv_user),
            timeout_ms=settings.dcv_session_timeout_seconds * 1000,
        ).raise_for_status()

        return SessionEndpoint(url=self.streaming_url(instance_id, session_id), session_id=session_id)

    def install_dcv(self, instance_id: str) -> None:
        logger.info(f"Installing DCV server on {instance_id} (this takes ~10-15 minutes)")
        self.commands.run_and_wait(
            instance_id,
            scripts.install_dcv_script(),
            timeout_ms=settings.dcv_install_timeout_seconds * 1000,
            command_timeout_seconds=settings.dcv_install_timeout_seconds,
        ).raise_for_status()
        self.instances.set_tag(instance_id, DCV_CONFIGURED_TAG, "true")
        logger.info(f"DCV installation completed on {instance_id}")

    def streaming_url(self, instance_id: str, session_id: str) -> str:
        public_ip = self.instances.get_instance_details(instance_id).public_ip
        if not public_ip:
            raise ResourceNotFound(f"Could not get public IP for instance {instance_id}")
        return f"https://{public_ip}:{self.dcv_port}?session-id={quote(session_id, safe='')}"

    def configure_tls_and_password(self, instance_id: str, ip: Optional[str], password: str) -> TlsConfigResult:
        """
        Set the admin password and provision a Let's Encrypt certificate for <ip>.nip.io.

        Each shell step runs as its own SSM command. Failures are reported in
        the result rather than raised; a missing certificate leaves DCV on its
        self-signed one.
        """
        password_set = False
        ssl_configured = False

        try:
            logger.info(f"Setting {self.dcv_user} password on {instance_id}")
            password_result = self.commands.run_and_wait(
                instance_id, scripts.set_password_script(self.dcv_user, password)
            )
            if password_result.success:
                password_set = True
            else:
                logger.error(f"Failed to set password on {instance_id}: {password_result.error}")

            if ip:
                ssl_configured = self._install_certificate(instance_id, scripts.nip_domain(ip))
            else:
                logger.error(f"No public IP for {instance_id}; skipping certificate request")

            message = f"Password: {'OK' if password_set else 'FAILED'}, SSL: {'OK' if ssl_configured else 'FAILED'}"
        except Exception as e:
            logger.error(f"Configuration error on {instance_id}: {str(e)}")
            message = str(e) or "Unknown error"

        return TlsConfigResult(
            success=password_set and ssl_configured,
            password_set=password_set,
            ssl_configured=ssl_configured,
            message=message,
        )

    def _install_certificate(self, instance_id: str, domain: str) -> bool:
        self.commands.run_and_wait(instance_id, scripts.disable_ie_security_script())
        self.commands.run_and_wait(instance_id, scripts.fetch_acme_client_script(settings.win_acme_url))

        logger.info(f"Requesting Let's Encrypt certificate for {domain}")
        cert_result = self.commands.run_and_wait(
            instance_id, scripts.request_certificate_script(domain, settings.acme_email)
        )
        if "created" not in cert_result.output and "Certificate" not in cert_result.output:
            logger.error(f"Certificate request may have failed on {instance_id}: {cert_result.output}")
            return False
        copy_result = self.commands.run_and_wait(instance_id, scripts.install_certificate_script())
        return "SSL configured" in copy_result.output

    def stop_session(self, instance_id: str) -> StopSessionResult:
        """Close any active session. Never raises: termination proceeds regardless."""
        try:
            logger.info(f"Closing any active DCV sessions on instance {instance_id}")
            self.commands.run_and_wait(
                instance_id, scripts.close_sessions_script(), timeout_ms=60_000
            ).raise_for_status()
            return StopSessionResult(
                instance_id=instance_id,
                stopped_successfully=True,
                message=f"DCV session closed on {instance_id}",
            )
        except Exception as e:
            logger.warning(f"Failed to close DCV session on {instance_id}: {str(e)}")
            return StopSessionResult(
                instance_id=instance_id,
                stopped_successfully=False,
                message=f"DCV close-session failed: {str(e)}",
            )
