"""Health check endpoint.

GET /api/health
"""

from http.server import BaseHTTPRequestHandler

from src.utils.config import CRMConfig
from src.utils.http import send_json


def health_payload() -> dict:
    """Liveness plus whether the datastore credentials are present."""
    configured = bool(CRMConfig.SUPABASE_URL and CRMConfig.SUPABASE_SERVICE_ROLE_KEY)
    return {
        "status": "ok" if configured else "degraded",
        "service": "swipelink-crm",
        "checks": {"supabase_configured": configured},
    }


class handler(BaseHTTPRequestHandler):
    """Health check handler for Vercel serverless function."""

    def do_GET(self):
        send_json(self, 200, health_payload())

    def do_POST(self):
        """Same as GET for health check."""
        self.do_GET()
