"""Outlook sender categorizer.

Sorts the senders in a Microsoft Graph mailbox into user-defined categories
using static rules first and Claude for the rest.
"""

__version__ = "0.1.0"
