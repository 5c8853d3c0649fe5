#   Copyright 2026 UCP Authors
#
#   Licensed under the Apache License, Version 2.0 (the "License");
#   you may not use this file except in compliance with the License.
#   You may obtain a copy of the License at
#
#       http://www.apache.org/licenses/LICENSE-2.0
#
#   Unless required by applicable law or agreed to in writing, software
#   distributed under the License is distributed on an "AS IS" BASIS,
#   WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#   See the License for the specific language governing permissions and
#   limitations under the License.

"""Shared configuration and startup logic for the checkout server."""

import contextlib
import dataclasses
import datetime

from absl import flags
import db
from fastapi import FastAPI

FLAGS = flags.FLAGS

SERVER_VERSION = "1.0.0"

DEFAULT_SESSION_TTL_MINUTES = 15
DEFAULT_PAYMENT_TIMEOUT_SECONDS = 45.0
DEFAULT_GATEWAY_FAILURE_RATE = 0.1

# Define flags only if they haven't been defined yet (to avoid duplicates
# during tests or re-imports)
try:
  flags.DEFINE_integer("port", None, "Port to run the server on")
  flags.DEFINE_string("products_db_path", None, "Path to products DB")
  flags.DEFINE_string("transactions_db_path", None, "Path to transactions DB")
except flags.DuplicateFlagError:
  pass

try:
  flags.DEFINE_integer(
      "session_ttl_minutes",
      DEFAULT_SESSION_TTL_MINUTES,
      "Lifetime of a checkout session before it expires",
  )
  flags.DEFINE_float(
      "payment_timeout_seconds",
      DEFAULT_PAYMENT_TIMEOUT_SECONDS,
      "Upper bound on a single payment gateway call",
  )
  flags.DEFINE_float(
      "gateway_failure_rate",
      DEFAULT_GATEWAY_FAILURE_RATE,
      "Simulated decline rate of the mock payment gateway",
  )
except flags.DuplicateFlagError:
  pass


@dataclasses.dataclass(frozen=True)
class CheckoutSettings:
  """Tunables of the checkout state machine."""

  session_ttl: datetime.timedelta = datetime.timedelta(
      minutes=DEFAULT_SESSION_TTL_MINUTES
  )
  payment_timeout: float = DEFAULT_PAYMENT_TIMEOUT_SECONDS


def get_checkout_settings() -> CheckoutSettings:
  """Builds settings from flags, or defaults when flags are not parsed."""
  if not FLAGS.is_parsed():
    return CheckoutSettings()
  return CheckoutSettings(
      session_ttl=datetime.timedelta(minutes=FLAGS.session_ttl_minutes),
      payment_timeout=FLAGS.payment_timeout_seconds,
  )


def get_gateway_failure_rate() -> float:
  if not FLAGS.is_parsed():
    return DEFAULT_GATEWAY_FAILURE_RATE
  return FLAGS.gateway_failure_rate


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
  """Shared lifespan manager for initializing databases."""
  del app  # Unused.
  # In tests or if flags aren't set, these might be None, handled by caller
  if (
      FLAGS.is_parsed()
      and FLAGS.products_db_path
      and FLAGS.transactions_db_path
  ):
    await db.manager.init_dbs(
        FLAGS.products_db_path, FLAGS.transactions_db_path
    )
  yield
  await db.manager.close()
