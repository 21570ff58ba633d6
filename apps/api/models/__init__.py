"""Models package."""

from .social_account import SocialAccount
from .social_metrics import SocialMetricsSnapshot
from .oauth_session import OAuthSession
