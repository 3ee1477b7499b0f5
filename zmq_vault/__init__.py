from .vault import SubscriptionVault, VaultException, SubscriptionNotFound, \
    upstream_filter
from .manager import TopicMessage, Subscriber, Publisher, SubscriberNode, \
    VaultMessageError, VaultConnectionError
