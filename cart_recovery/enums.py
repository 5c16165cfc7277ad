from enum import Enum


class CartStatusEnum(str, Enum):
    abandoned = "abandoned"
    recovered = "recovered"
    expired = "expired"


class ActivityTypeEnum(str, Enum):
    app_installed = "app_installed"
    carts_synced = "carts_synced"
    cart_recovered = "cart_recovered"
    webhooks_setup = "webhooks_setup"
    settings_updated = "settings_updated"


class ActivitySeverityEnum(str, Enum):
    success = "success"
    error = "error"
    warning = "warning"
    info = "info"


class WebhookTopic(str, Enum):
    CHECKOUTS_CREATE = "checkouts/create"
    CHECKOUTS_UPDATE = "checkouts/update"
    ORDERS_CREATE = "orders/create"
    CARTS_CREATE = "carts/create"
    CARTS_UPDATE = "carts/update"
    APP_UNINSTALLED = "app/uninstalled"


class WebhookActionEnum(str, Enum):
    created = "created"
    updated = "updated"
    recovered = "recovered"
    deactivated = "deactivated"
    ignored = "ignored"
