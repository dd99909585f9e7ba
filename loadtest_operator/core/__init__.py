"""Controller core: reconciler, status updater, worker poller, cloud coordination."""
