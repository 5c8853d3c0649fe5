"""Pytest plumbing: absltest helpers need absl flags parsed before use."""

from absl import flags


def pytest_configure(config):
  if not flags.FLAGS.is_parsed():
    flags.FLAGS.mark_as_parsed()
