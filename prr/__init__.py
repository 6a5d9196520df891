"""Progressive Replica Reconciler (PRR).

Drives canary-style replica-count rollouts for Kubernetes Deployments:
 - the rollout plan lives in the workload's own annotations
 - a level-triggered reconcile pass derives the next action from a snapshot
 - drift introduced by other actors is repaired before anything else
 - each step has a deadline and an unavailable-replica tolerance

Every pass is stateless: it can be repeated, or resumed after a crash, from
the annotations alone.
"""
