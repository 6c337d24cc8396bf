from .subscription import Subscription
