"""Change-triggered test runner for Go projects.

This package watches a Go source tree and restarts ``go test -v ./...`` on
every real source change, cancelling the run in flight and coloring its
output line by line.
"""

__version__ = "0.1.0"
