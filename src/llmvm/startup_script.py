"""
Boot-time payload for the inference VM.

The script is opaque to the rest of llmvm: it is attached to the instance
as ``startup-script`` metadata and executed by the guest on first boot.
It installs a Python model-serving stack, writes a short inference
driver, runs it once, and records the outcome in one of two log files.

There is no retry, health check or restart, and no serving port is
opened. The run is a one-shot verification that the model loads and
generates. A failure leaves the error log behind and a non-zero exit
status that nothing outside the guest observes.
"""

from __future__ import annotations

DEFAULT_MODEL_ID = "TinyLlama/TinyLlama-1.1B-Chat-v1.0"
DEFAULT_PROMPT = "Explain what a virtual private cloud is in one sentence."
DEFAULT_MAX_NEW_TOKENS = 64

INSTALL_DIR = "/opt/llm"
DRIVER_PATH = f"{INSTALL_DIR}/inference.py"
SUCCESS_LOG = "/var/log/llm-inference.log"
ERROR_LOG = "/var/log/llm-inference-error.log"
FIRST_BOOT_MARKER = f"{INSTALL_DIR}/.first-boot-done"

SYSTEM_PACKAGES = ["python3", "python3-pip", "python3-venv"]
PYTHON_PACKAGES = ["torch", "transformers", "accelerate"]


def _build_driver(model_id: str, prompt: str, max_new_tokens: int) -> str:
    """Render the Python inference driver written onto the guest."""
    return f'''import sys
import time
import traceback

MODEL_ID = {model_id!r}
PROMPT = {prompt!r}
MAX_NEW_TOKENS = {max_new_tokens}
SUCCESS_LOG = {SUCCESS_LOG!r}
ERROR_LOG = {ERROR_LOG!r}

try:
    import torch
    from transformers import AutoModelForCausalLM, AutoTokenizer

    tokenizer = AutoTokenizer.from_pretrained(MODEL_ID)
    model = AutoModelForCausalLM.from_pretrained(MODEL_ID, torch_dtype=torch.float32)
    inputs = tokenizer(PROMPT, return_tensors="pt")
    output = model.generate(**inputs, max_new_tokens=MAX_NEW_TOKENS)
    text = tokenizer.decode(output[0], skip_special_tokens=True)
    with open(SUCCESS_LOG, "a") as fh:
        fh.write("%s model=%s\\n%s\\n" % (time.strftime("%Y-%m-%dT%H:%M:%S"), MODEL_ID, text))
except Exception:
    with open(ERROR_LOG, "a") as fh:
        fh.write(traceback.format_exc())
    sys.exit(1)
'''


def build_startup_script(
    model_id: str = DEFAULT_MODEL_ID,
    prompt: str = DEFAULT_PROMPT,
    max_new_tokens: int = DEFAULT_MAX_NEW_TOKENS,
) -> str:
    """Generate the startup-script metadata for the inference VM.

    Args:
        model_id: Hugging Face model identifier to download and run.
        prompt: Prompt used for the single verification generation.
        max_new_tokens: Generation length for the verification run.

    Returns:
        Bash script text.

    Raises:
        ValueError: If model_id is empty or max_new_tokens is not positive.
    """
    if not model_id.strip():
        raise ValueError("model_id must not be empty")
    if max_new_tokens < 1:
        raise ValueError("max_new_tokens must be positive")

    driver = _build_driver(model_id, prompt, max_new_tokens)
    system_packages = " ".join(SYSTEM_PACKAGES)
    python_packages = " ".join(PYTHON_PACKAGES)
    return f"""#!/bin/bash
# llmvm first-boot payload: install the model stack and run one inference.
# NOTE: no inference endpoint is exposed; this only verifies the model runs.
set -u

SUCCESS_LOG={SUCCESS_LOG}
ERROR_LOG={ERROR_LOG}
INSTALL_DIR={INSTALL_DIR}

if [ -f {FIRST_BOOT_MARKER} ]; then
  exit 0
fi
mkdir -p "$INSTALL_DIR"
touch {FIRST_BOOT_MARKER}

fail() {{
  echo "$(date -Is) $1" >> "$ERROR_LOG"
  exit 1
}}

export DEBIAN_FRONTEND=noninteractive
apt-get update -y || fail "apt-get update failed"
apt-get install -y {system_packages} || fail "system package install failed"

python3 -m venv "$INSTALL_DIR/venv" || fail "virtualenv creation failed"
"$INSTALL_DIR/venv/bin/pip" install --upgrade pip || fail "pip upgrade failed"
"$INSTALL_DIR/venv/bin/pip" install {python_packages} || fail "python package install failed"

cat > {DRIVER_PATH} << 'LLMVM_DRIVER_EOF'
{driver}LLMVM_DRIVER_EOF

"$INSTALL_DIR/venv/bin/python" {DRIVER_PATH}
"""
