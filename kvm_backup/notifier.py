"""
Operator alerts through the system mail command
"""
import socket
import subprocess
from typing import Optional

from .logging_config import get_logger


class MailNotifier:
    """Sends failure reports with `mail -s <subject> <recipient>`"""

    def __init__(self, recipient: str, command: str = "mail", sender_name: str = "kvm-backup",
                 host: Optional[str] = None):
        self.recipient = recipient
        self.command = command
        self.sender_name = sender_name
        self.host = host or socket.gethostname()
        self.logger = get_logger("kvm_backup.notifier")

    def format_body(self, error: str, domain: str, command: str, disk_image: Optional[str] = None) -> str:
        lines = [error, f"Host:       {self.host}"]
        if disk_image:
            lines.append(f"Disk Image: {disk_image}")
        lines.append(f"Domain:     {domain}")
        lines.append(f"Command:    {command}")
        return "\n".join(lines) + "\n"

    def alert(self, kind: str, error: str, domain: str, command: str,
              disk_image: Optional[str] = None) -> bool:
        """Mail '<sender> <kind> Exception for <domain>'"""
        subject = f"{self.sender_name} {kind} Exception for {domain}"
        return self.send(subject, self.format_body(error, domain, command, disk_image))

    def send(self, subject: str, body: str) -> bool:
        if not self.recipient:
            self.logger.warning("No mail recipient configured, alert not sent", subject=subject)
            return False

        try:
            result = subprocess.run([self.command, "-s", subject, self.recipient],
                                    input=body, capture_output=True, text=True)
        except OSError as e:
            self.logger.warning("Failed to run mail command", command=self.command, error=str(e))
            return False

        if result.returncode != 0:
            self.logger.warning("Mail command failed", command=self.command,
                                exit_code=result.returncode, stderr=result.stderr)
            return False

        self.logger.info("Alert mailed", recipient=self.recipient, subject=subject)
        return True
