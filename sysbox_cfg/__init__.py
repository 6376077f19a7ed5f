"""sysbox-cfg.

Host-side tooling for running the docker engine with the sysbox runtime:
 - docker-cfg: edits /etc/docker/daemon.json idempotently, decides whether the
   change needs nothing, a reload (SIGHUP) or a full engine restart, and
   carries that out without disrupting existing containers unless forced
 - sysbox: starts, stops and restarts the sysbox-mgr / sysbox-fs daemons under
   systemd or as plain background processes

Every run is single-shot and sequential; waits are bounded polls.
"""
