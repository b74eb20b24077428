# jobs/flags.py
class OperationFlags:
    """Environment-driven switches for the money-moving jobs."""

    def __init__(self, benefits_release=False, commissions_release=False,
                 read_only=False, maintenance=False):
        self.benefits_release = benefits_release
        self.commissions_release = commissions_release
        self.read_only = read_only
        self.maintenance = maintenance

    @classmethod
    def from_config(cls, config):
        return cls(
            benefits_release=bool(config.get("ENABLE_BENEFITS_RELEASE", False)),
            commissions_release=bool(config.get("ENABLE_COMMISSIONS_RELEASE", False)),
            read_only=bool(config.get("READ_ONLY_API", False)),
            maintenance=bool(config.get("MAINTENANCE_MODE", False)),
        )

    @property
    def writes_allowed(self):
        return not (self.read_only or self.maintenance)

    @property
    def benefits_enabled(self):
        return self.benefits_release and self.writes_allowed

    @property
    def commissions_enabled(self):
        return self.commissions_release and self.writes_allowed

    def summary(self):
        return {
            "benefitsRelease": self.benefits_release,
            "commissionsRelease": self.commissions_release,
            "readOnly": self.read_only,
            "maintenance": self.maintenance,
            "benefitsEnabled": self.benefits_enabled,
            "commissionsEnabled": self.commissions_enabled,
        }
