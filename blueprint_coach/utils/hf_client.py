"""
HuggingFace Client - Model loading and text generation

Responsibilities:
- Load a causal LM with optional 4-bit quantization
- Apply the model's chat formatting to plain prompts
- Generate short coaching text

Design principles:
- Dependency injection (no singleton)
- Fail fast on critical errors (CUDA unavailable, OOM at load)
- Synchronous: async callers run generate() in a worker thread
"""

import logging
import time
from typing import Any, Dict, Optional

import torch
from transformers import AutoModelForCausalLM, AutoTokenizer, BitsAndBytesConfig

logger = logging.getLogger(__name__)

DEVICE_CUDA = "cuda"
DEVICE_CPU = "cpu"
DEVICE_MAP_AUTO = "auto"

# Instruction wrappers for model families whose tokenizer ships no chat template
INSTRUCTION_WRAPPERS = {
    "mistral": "[INST] {prompt} [/INST]",
    "mixtral": "[INST] {prompt} [/INST]",
    "llama": "[INST] {prompt} [/INST]",
    "zephyr": "<|user|>\n{prompt}\n<|assistant|>\n",
    "phi": "<|user|>\n{prompt}<|end|>\n<|assistant|>\n",
}


def model_family(model_name: str) -> Optional[str]:
    """Known family named in the model id (most specific match first)."""
    name = model_name.lower()
    for family in ("mixtral", "mistral", "llama", "zephyr", "phi"):
        if family in name:
            return family
    return None


class HuggingFaceClient:
    """Wrapper for HuggingFace model inference"""

    def __init__(
        self,
        model_name: str,
        load_in_4bit: bool = True,
        device: str = DEVICE_CUDA
    ) -> None:
        """
        Initialize model and tokenizer

        Args:
            model_name: HuggingFace model identifier
            load_in_4bit: Use 4-bit quantization (CUDA only)
            device: "cuda" or "cpu"

        Raises:
            RuntimeError: If CUDA requested but not available
            Exception: If model loading fails
        """
        self.model_name = model_name
        self.device = device

        if device == DEVICE_CUDA and not torch.cuda.is_available():
            raise RuntimeError("CUDA requested but not available. Check nvidia-smi.")

        logger.info(f"Loading model: {model_name} (device={device}, 4-bit={load_in_4bit})")

        quantization_config = None
        if load_in_4bit and device == DEVICE_CUDA:
            quantization_config = BitsAndBytesConfig(
                load_in_4bit=True,
                bnb_4bit_quant_type="nf4",
                bnb_4bit_compute_dtype=torch.bfloat16,
                bnb_4bit_use_double_quant=True
            )

        try:
            self.tokenizer = AutoTokenizer.from_pretrained(model_name)
            if self.tokenizer.pad_token is None and self.tokenizer.eos_token is not None:
                self.tokenizer.pad_token = self.tokenizer.eos_token
        except Exception as e:
            logger.error(f"Failed to load tokenizer: {e}")
            raise

        try:
            self.model = AutoModelForCausalLM.from_pretrained(
                model_name,
                quantization_config=quantization_config,
                device_map=DEVICE_MAP_AUTO if device == DEVICE_CUDA else None,
                torch_dtype=torch.bfloat16 if device == DEVICE_CUDA else torch.float32
            )
        except torch.cuda.OutOfMemoryError:
            logger.error("CUDA Out of Memory during model loading")
            raise
        except Exception as e:
            logger.error(f"Failed to load model: {e}")
            raise

        self.model.eval()
        self.family = model_family(model_name)
        logger.info("HuggingFace client initialized successfully")

    def is_loaded(self) -> bool:
        return self.model is not None and self.tokenizer is not None

    def format_prompt(self, prompt: str) -> str:
        """
        Wrap a plain prompt in the model's instruction format.

        Priority: tokenizer chat template, then a known family wrapper,
        then the prompt unchanged.
        """
        if getattr(self.tokenizer, "chat_template", None):
            try:
                return self.tokenizer.apply_chat_template(
                    [{"role": "user", "content": prompt}],
                    tokenize=False,
                    add_generation_prompt=True
                )
            except Exception as e:
                logger.warning(f"Chat template failed, using manual format: {e}")
        wrapper = INSTRUCTION_WRAPPERS.get(self.family)
        return wrapper.format(prompt=prompt) if wrapper else prompt

    def generate(self, prompt: str, max_tokens: int = 160, temperature: float = 0.4) -> str:
        """
        Generate text completion from prompt

        Args:
            prompt: Input prompt (plain text)
            max_tokens: Maximum tokens to generate
            temperature: Sampling temperature (0.0 = deterministic)

        Returns:
            str: Generated text

        Raises:
            RuntimeError: If model not loaded
            torch.cuda.OutOfMemoryError: If GPU runs out of memory
        """
        if not self.is_loaded():
            raise RuntimeError("Model not loaded")

        start_time = time.time()
        inputs = self.tokenizer(self.format_prompt(prompt), return_tensors="pt")
        if self.device == DEVICE_CUDA:
            inputs = inputs.to(DEVICE_CUDA)
        prompt_tokens = inputs.input_ids.shape[1]

        try:
            with torch.no_grad():
                outputs = self.model.generate(
                    inputs.input_ids,
                    attention_mask=inputs.attention_mask,
                    max_new_tokens=max_tokens,
                    temperature=temperature,
                    do_sample=temperature > 0,
                    pad_token_id=self.tokenizer.pad_token_id
                )
        except torch.cuda.OutOfMemoryError:
            logger.error(f"CUDA OOM during generation (prompt tokens: {prompt_tokens})")
            raise

        generated_ids = outputs[0][prompt_tokens:]
        text = self.tokenizer.decode(generated_ids, skip_special_tokens=True).strip()
        logger.debug(f"Generated {len(generated_ids)} tokens in {(time.time() - start_time) * 1000:.0f}ms")
        return text

    def get_model_info(self) -> Dict[str, Any]:
        return {
            "model_name": self.model_name,
            "device": self.device,
            "family": self.family,
        }
