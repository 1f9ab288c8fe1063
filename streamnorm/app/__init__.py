"""Application services for streamnorm."""
