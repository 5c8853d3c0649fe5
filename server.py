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

"""Storefront Checkout Server (Python/FastAPI)."""

import logging
import sys
from typing import Sequence
from absl import app as absl_app
import config
from exceptions import CheckoutError
from fastapi import FastAPI
from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from routes.checkout import router as checkout_router
import uvicorn

# --- App Setup ---

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Storefront Checkout Service",
    version=config.SERVER_VERSION,
    description="Checkout and payment orchestration for the storefront",
    lifespan=config.lifespan,
)


@app.exception_handler(CheckoutError)
async def checkout_exception_handler(request: Request, exc: CheckoutError):
  """Handles checkout exceptions and converts them to JSON responses."""
  del request  # Unused.
  content = {"success": False, "error": exc.code, "message": exc.message}
  content.update(exc.details)
  return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
):
  """Reports malformed request bodies as 400 INVALID_REQUEST."""
  del request  # Unused.
  errors = exc.errors()
  message = "Invalid request."
  if errors:
    field = ".".join(str(part) for part in errors[0]["loc"] if part != "body")
    message = f"Invalid request: {field} {errors[0]['msg']}".strip()
  return JSONResponse(
      status_code=400,
      content={
          "success": False,
          "error": "INVALID_REQUEST",
          "message": message,
      },
  )


@app.exception_handler(Exception)
async def unexpected_exception_handler(request: Request, exc: Exception):
  """Logs unexpected failures and hides their details from clients."""
  logger.exception(
      "Unhandled error on %s %s",
      request.method,
      request.url.path,
      exc_info=exc,
  )
  return JSONResponse(
      status_code=500,
      content={
          "success": False,
          "error": "INTERNAL_ERROR",
          "message": "An unexpected error occurred. Please try again.",
      },
  )


app.include_router(checkout_router)


def main(argv: Sequence[str]) -> None:
  """Main entry point for the Checkout Server."""
  del argv  # Unused.

  if (
      config.FLAGS.products_db_path is None
      or config.FLAGS.transactions_db_path is None
      or config.FLAGS.port is None
  ):
    logger.error(
        "Both --products_db_path, --transactions_db_path, and --port must be"
        " provided."
    )
    print("\nUsage:")
    print(config.FLAGS.main_module_help())
    sys.exit(1)

  uvicorn.run(app, host="0.0.0.0", port=config.FLAGS.port)


if __name__ == "__main__":
  absl_app.run(main)
