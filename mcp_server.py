"""
MCP Server: Helpdesk Knowledge Service
======================================
Exposes demo tools for sequential flows via the Model Context Protocol.

Tools:
  - search_articles  → Read-only. Knowledge-base search; returns source
                       documents after the SOURCE_DOCUMENTS marker.
  - get_ticket       → Read-only. Look up a support ticket.
  - ticket_chart     → Read-only. Ticket counts by status as an artifact.
  - escalate_ticket  → WRITE. Flows put this behind an approval gate.
  - close_ticket     → WRITE. Flows put this behind an approval gate.

Run standalone:   python mcp_server.py
Or via a session: FlowSession starts this as a subprocess (stdio transport).
"""
import json

from mcp.server.fastmcp import FastMCP

from seqflow.tool_node import ARTIFACTS_PREFIX, SOURCE_DOCUMENTS_PREFIX

mcp = FastMCP("Helpdesk Knowledge Service")

# ---------------------------------------------------------------------------
# In-memory helpdesk data
# ---------------------------------------------------------------------------

ARTICLES = {
    "KB-100": {
        "title": "Resetting your password",
        "body": "Open Settings → Security and choose 'Reset password'. A link is emailed within 5 minutes.",
        "tags": ["password", "login", "account"],
    },
    "KB-101": {
        "title": "Refund policy",
        "body": "Purchases can be refunded within 30 days. Refunds reach the original payment method in 3-5 business days.",
        "tags": ["refund", "billing", "payment"],
    },
    "KB-102": {
        "title": "Exporting reports",
        "body": "Reports can be exported as CSV or PDF from the Reports page using the Export button.",
        "tags": ["reports", "export", "csv", "pdf"],
    },
}

TICKETS = {
    "TCK-1": {
        "ticket_id": "TCK-1",
        "subject": "Cannot log in after password change",
        "status": "open",
        "priority": "normal",
        "customer": "alex@example.com",
    },
    "TCK-2": {
        "ticket_id": "TCK-2",
        "subject": "Double charge on invoice INV-88",
        "status": "pending",
        "priority": "high",
        "customer": "sam@example.com",
    },
    "TCK-3": {
        "ticket_id": "TCK-3",
        "subject": "PDF export cuts off last column",
        "status": "closed",
        "priority": "low",
        "customer": "kim@example.com",
    },
}


def _matches(article: dict, query: str) -> bool:
    words = [w for w in query.lower().split() if w]
    haystack = " ".join([article["title"], article["body"], *article["tags"]]).lower()
    return any(w in haystack for w in words)


# ---------------------------------------------------------------------------
# Read-only tools
# ---------------------------------------------------------------------------

@mcp.tool()
def search_articles(query: str) -> str:
    """
    Search the help-center knowledge base.

    Returns a short answer summary followed by the matching articles as
    source documents, so the flow can cite them.

    Args:
        query: Free-text search terms (e.g., "refund policy")
    """
    hits = [(article_id, a) for article_id, a in ARTICLES.items() if _matches(a, query)]
    if not hits:
        return f"No articles found for '{query}'."

    summary = "\n".join(f"{article_id}: {a['title']}" for article_id, a in hits)
    documents = [
        {"pageContent": a["body"], "metadata": {"id": article_id, "title": a["title"]}}
        for article_id, a in hits
    ]
    return summary + SOURCE_DOCUMENTS_PREFIX + json.dumps(documents)


@mcp.tool()
def get_ticket(ticket_id: str) -> str:
    """
    Retrieve a support ticket by ID.

    Args:
        ticket_id: The ticket identifier (e.g., "TCK-1")
    """
    ticket = TICKETS.get(ticket_id)
    if not ticket:
        return json.dumps({"error": f"Ticket '{ticket_id}' not found."})
    return json.dumps(ticket)


@mcp.tool()
def ticket_chart() -> str:
    """
    Count tickets by status and return the counts plus a bar-chart artifact.
    """
    counts: dict[str, int] = {}
    for ticket in TICKETS.values():
        counts[ticket["status"]] = counts.get(ticket["status"], 0) + 1

    artifact = {
        "type": "chart",
        "data": {"kind": "bar", "labels": list(counts), "values": list(counts.values())},
    }
    return json.dumps(counts) + ARTIFACTS_PREFIX + json.dumps([artifact])


# ---------------------------------------------------------------------------
# Write tools: demo flows gate these behind approval
# ---------------------------------------------------------------------------

@mcp.tool()
def escalate_ticket(ticket_id: str, reason: str) -> str:
    """
    Escalate a ticket to the on-call engineer.

    ⚠️  Pages a human — the flow pauses for approval before running this.

    Args:
        ticket_id: The ticket to escalate
        reason:    Why the ticket needs escalation
    """
    ticket = TICKETS.get(ticket_id)
    if not ticket:
        return json.dumps({"error": f"Ticket '{ticket_id}' not found."})
    if ticket["status"] == "closed":
        return json.dumps({"error": f"Ticket '{ticket_id}' is closed and cannot be escalated."})
    return json.dumps({
        "ticket_id": ticket_id,
        "priority":  "urgent",
        "status":    "escalated",
        "reason":    reason,
    })


@mcp.tool()
def close_ticket(ticket_id: str, resolution: str) -> str:
    """
    Close a ticket with a resolution note.

    ⚠️  The flow pauses for approval before running this.

    Args:
        ticket_id:  The ticket to close
        resolution: Resolution summary sent to the customer
    """
    ticket = TICKETS.get(ticket_id)
    if not ticket:
        return json.dumps({"error": f"Ticket '{ticket_id}' not found."})
    if ticket["status"] == "closed":
        return json.dumps({"error": f"Ticket '{ticket_id}' is already closed."})
    return json.dumps({
        "ticket_id":  ticket_id,
        "status":     "closed",
        "resolution": resolution,
    })


if __name__ == "__main__":
    mcp.run()
