from .notifier import AlertNotifier, format_alert

__all__ = ["AlertNotifier", "format_alert"]
