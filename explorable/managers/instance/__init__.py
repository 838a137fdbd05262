from explorable.managers.instance.instance import InstanceManager, probe_http, probe_tcp

__all__ = ["InstanceManager", "probe_http", "probe_tcp"]
