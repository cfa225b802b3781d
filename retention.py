from utils import InvalidConfiguration


class SnapshotLatestQueue:
    """Keeps the ``max_size`` most recent snapshots pushed into it.

    ``snapshots`` is ordered most recent first. Items only need a
    ``created_at_time`` attribute; snapshots with the same creation time keep
    the order they were pushed in, so the first one pushed is retained.
    """

    def __init__(self, max_size):
        if max_size is None or max_size < 1:
            raise InvalidConfiguration(f"max_size must be at least 1, got {max_size}")
        self.max_size = max_size
        self.snapshots = []

    def __len__(self):
        return len(self.snapshots)

    def push(self, snapshot):
        """Insert ``snapshot`` and return whatever no longer fits.

        That is the oldest snapshot pushed out to make room, the snapshot
        itself when the queue is full and it is not newer than any held one,
        or ``None``.
        """
        insert_at_index = None
        for index, compare_snapshot in enumerate(self.snapshots[:self.max_size]):
            if compare_snapshot.created_at_time < snapshot.created_at_time:
                insert_at_index = index
                break

        if insert_at_index is None:
            if len(self.snapshots) < self.max_size:
                self.snapshots.append(snapshot)
                return None
            return snapshot

        self.snapshots.insert(insert_at_index, snapshot)

        if len(self.snapshots) > self.max_size:
            return self.snapshots.pop()

        return None
