"""Scheduler engine.

Modules
-------
status         TokenStatus and its transition table
tokens         TokenTreeExecutor: expansion, fan-in, retry, cancellation
dispatch       DispatchQueue: enqueue, claim protocol, reaper
signals        SignalRelay: OS signals addressed by (hostname, pid)
memory         MemoryGuard: RSS sampling and overrun termination
archive        HistoryArchiver: execution history and purging
lifecycle      LifecycleController: trigger, observe, cancel, retry, skip
notifications  Notifier protocol and the default LogNotifier
processor      Processor loop driving all of the above
"""
