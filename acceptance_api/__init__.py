"""
Provider Acceptance Verification API.

Tracks crowd-sourced reports of whether healthcare providers accept specific
insurance plans and scores how far each provider/plan answer can be trusted.

The service allows users to:
- Submit verifications for a provider/plan pair
- Vote on whether other users' verifications are accurate
- Read the aggregated status and confidence breakdown for a pair
"""

__version__ = "0.1.0"
