"""Worker agents: register by (hostname, worker_id), claim, run, report."""
