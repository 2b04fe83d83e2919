"""BBStats: Cloudflare Gateway activity summaries for the dashboard."""

__version__ = "0.3.0"
