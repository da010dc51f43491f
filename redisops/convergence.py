class Run:
    """
    Shared state of one pyinfra run. Some resources, such as the logrotate
    package, are needed by every Sentinel instance but must be declared only
    once per host. Create one Run in your deploy file and pass it to all
    operations that declare such resources.
    """

    def __init__(self):
        self._claimed = set()

    def claim(self, *key) -> bool:
        """
        Claims a shared resource. Returns True if the caller is the first
        to claim the key and should declare the resource.
        """
        if key in self._claimed:
            return False
        self._claimed.add(key)
        return True
