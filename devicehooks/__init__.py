"""DeviceHooks: device webhook subscriptions and event fan-out relay."""

__version__ = "0.1.0"
