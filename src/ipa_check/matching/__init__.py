"""Match task queue, worker and the pieces a worker drives.

A task pairs two artifacts; a worker leases it, waits for both files to land
intact in its local storage, runs the external analysis tool on them and
records the similarity score the tool writes.
"""
