# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
stagecheck: staged bootstrap and verification harness for a self-hosting
compiler.

  stages:   stage0 (snapshot or host-built) .. stage3, each the previous
            stage's compiler applied to the canonical compiler source
  runner:   the test corpus against every tested stage, failures isolated
            per (test, stage)
  fixpoint: one more self-compilation must reproduce the last tested stage
"""

__all__ = ["cli", "harness", "stages", "runner", "fixpoint", "invoker", "engine"]
