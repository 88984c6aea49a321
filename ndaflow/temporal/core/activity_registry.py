from typing import Callable, Dict, List


class ActivityRegistry:
    """Activities the analysis worker serves, keyed by their Temporal name."""

    _activities: Dict[str, Callable] = {}

    @classmethod
    def register(cls, category: str, name: str = None):
        """Decorator to register an activity.

        Temporal resolves activities by name alone, so a second activity with
        the same name is rejected even under another category.
        """
        def decorator(activity_func):
            activity_name = name or activity_func.__name__
            existing = cls._activities.get(activity_name)
            if existing is not None and existing is not activity_func:
                raise ValueError(f"Activity '{activity_name}' is already registered")
            activity_func.__activity_category__ = category
            cls._activities[activity_name] = activity_func
            return activity_func
        return decorator

    @classmethod
    def get_all_activities(cls) -> Dict[str, Callable]:
        return dict(cls._activities)

    @classmethod
    def names(cls, category: str) -> List[str]:
        return sorted(
            name for name, func in cls._activities.items()
            if getattr(func, "__activity_category__", None) == category
        )
