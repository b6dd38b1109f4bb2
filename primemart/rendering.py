import requests

from primemart.errors import RenderError


class HtmlPdfRenderer:
    """Client for a Gotenberg-compatible HTML to PDF service."""

    convert_path = "/forms/chromium/convert/html"

    def __init__(self, base_url: str, timeout: int, logger):
        self.base_url = (base_url or "").rstrip("/")
        self.timeout = timeout
        self.logger = logger

    def render(self, html: str) -> bytes:
        if not self.base_url:
            raise RenderError("Document renderer is not configured.")

        try:
            response = requests.post(
                f"{self.base_url}{self.convert_path}",
                files={"index.html": ("index.html", html.encode("utf-8"), "text/html")},
                data={
                    "paperWidth": "8.27",
                    "paperHeight": "11.7",
                    "marginTop": "0.47",
                    "marginBottom": "0.47",
                    "marginLeft": "0.47",
                    "marginRight": "0.47",
                    "printBackground": "true",
                    "preferCssPageSize": "true",
                },
                timeout=self.timeout,
            )
        except requests.Timeout as exc:
            self.logger.error("Invoice rendering timed out after %ss", self.timeout)
            raise RenderError("Invoice rendering timed out.") from exc
        except requests.RequestException as exc:
            self.logger.error("Invoice renderer unreachable: %s", exc)
            raise RenderError(f"PDF generation failed: {exc}") from exc

        if response.status_code != 200:
            self.logger.error(
                "Invoice renderer returned %s: %s", response.status_code, response.text[:200]
            )
            raise RenderError(f"PDF generation failed with status {response.status_code}.")

        if not response.content:
            raise RenderError("PDF generation returned an empty document.")

        return response.content
