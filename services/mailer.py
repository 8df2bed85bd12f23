# services/mailer.py
# Transporte SMTP. Criado uma vez no boot e injetado nos handlers.
import logging
import smtplib
from email.mime.text import MIMEText
from email.utils import formatdate, make_msgid
from typing import Optional

from services.errors import MailError

logger = logging.getLogger(__name__)


class Mailer:
    """
    Envio de e-mail via SMTP.
    - secure=True: SMTP_SSL (TLS implícito, porta 465)
    - secure=False: SMTP simples com STARTTLS quando o servidor oferece
    Cada envio abre uma conexão curta; a configuração é imutável.
    """
    def __init__(
        self,
        host: str,
        port: int,
        sender: str,
        user: str = "",
        password: str = "",
        secure: bool = False,
        timeout_s: float = 15.0,
    ):
        self.host = host
        self.port = port
        self.sender = sender
        self._user = user
        self._password = password
        self.secure = secure
        self.timeout_s = timeout_s

    @classmethod
    def from_settings(cls, settings) -> "Mailer":
        return cls(
            host=settings.smtp_host,
            port=settings.smtp_port,
            sender=settings.smtp_from,
            user=settings.smtp_user,
            password=settings.smtp_password,
            secure=settings.smtp_secure,
            timeout_s=settings.smtp_timeout_s,
        )

    def build_message(self, to: str, subject: str, body: str) -> MIMEText:
        msg = MIMEText(body, "plain", "utf-8")
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = to
        msg["Date"] = formatdate(localtime=False)
        msg["Message-ID"] = make_msgid()
        return msg

    def _connect(self) -> smtplib.SMTP:
        if self.secure:
            return smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout_s)
        server = smtplib.SMTP(self.host, self.port, timeout=self.timeout_s)
        server.ehlo()
        if server.has_extn("starttls"):
            server.starttls()
            server.ehlo()
        return server

    def send(self, to: str, subject: str, body: str) -> Optional[str]:
        """Envia uma mensagem; retorna o Message-ID. Falhas viram MailError."""
        msg = self.build_message(to, subject, body)
        try:
            with self._connect() as server:
                if self._user and self._password:
                    server.login(self._user, self._password)
                server.sendmail(self.sender, [to], msg.as_string())
        except (smtplib.SMTPException, OSError) as e:
            logger.error("[MAIL] falha ao enviar para %s: %s", to, e)
            raise MailError(str(e)) from e
        logger.info("[MAIL] enviado para %s.", to)
        return msg["Message-ID"]
