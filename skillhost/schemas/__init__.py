from .messages import ChannelType, Message
from .manifest import SkillManifest, SubscriptionSpec

__all__ = ["ChannelType", "Message", "SkillManifest", "SubscriptionSpec"]
