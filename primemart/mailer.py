from typing import Dict, Optional, Tuple

import resend


class ResendMailer:
    def __init__(self, api_key: str, sender: str, logger):
        self.api_key = (api_key or "").strip()
        self.sender = sender
        self.logger = logger

    def send(
        self,
        to: str,
        subject: str,
        html: str,
        attachment: Optional[bytes] = None,
        filename: str = "invoice.pdf",
    ) -> Tuple[bool, Optional[str]]:
        if not self.api_key:
            return False, "Resend API key is not configured."
        if not to:
            return False, "Missing recipient email."

        payload: Dict[str, object] = {
            "from": self.sender,
            "to": [to],
            "subject": subject,
            "html": html,
        }
        if attachment:
            payload["attachments"] = [
                {"filename": filename, "content": list(attachment)}
            ]

        previous_api_key = getattr(resend, "api_key", None)
        resend.api_key = self.api_key
        try:
            response = resend.Emails.send(payload)
        except Exception as exc:
            return False, str(exc)
        finally:
            resend.api_key = previous_api_key

        if not isinstance(response, dict) or not response.get("id"):
            return False, str(response)

        self.logger.info("Email sent to %s: %s", to, response.get("id"))
        return True, None
