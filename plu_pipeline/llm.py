# plu_pipeline/llm.py
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

import torch
from transformers import AutoModelForCausalLM, AutoTokenizer

logger = logging.getLogger(__name__)

DEFAULT_MODEL_ID = "microsoft/Phi-3-mini-4k-instruct"


@dataclass(frozen=True)
class GenerationConfig:
    """
    Greedy decoding, so a ruleset extraction is repeatable run to run.
    """
    max_new_tokens: int = 256
    do_sample: bool = False
    temperature: float = 0.0         # only read when do_sample=True
    top_p: float = 1.0
    num_beams: int = 1
    repetition_penalty: float = 1.0
    # longer prompts lose their head (the document excerpts), never the JSON instructions at the end
    max_input_tokens: Optional[int] = 3500


class LocalLLM:
    """
    Local causal LM used for zone discovery and ruleset extraction.

    Prompts go through the tokenizer's chat template when it has one. The
    response prefix (the forced "{" plus anything already generated) opens
    the assistant turn.
    """

    def __init__(
        self,
        model_name_or_path: str = DEFAULT_MODEL_ID,
        cache_dir: Optional[str] = None,
        seed: int = 0,
        use_chat_template: bool = True,
    ) -> None:
        self.model_name_or_path = model_name_or_path
        self.cache_dir = cache_dir or os.environ.get("PLU_MODEL_CACHE")
        self.seed = seed

        torch.manual_seed(seed)
        self.device = "cuda" if torch.cuda.is_available() else "cpu"
        dtype = torch.float16 if self.device == "cuda" else torch.float32

        self.tokenizer = AutoTokenizer.from_pretrained(model_name_or_path, cache_dir=self.cache_dir, use_fast=True)
        self.model = AutoModelForCausalLM.from_pretrained(
            model_name_or_path,
            cache_dir=self.cache_dir,
            dtype=dtype,
            device_map="auto" if self.device == "cuda" else None,
        )
        self.model.eval()

        if self.tokenizer.pad_token_id is None and self.tokenizer.eos_token_id is not None:
            self.tokenizer.pad_token = self.tokenizer.eos_token

        self.use_chat_template = use_chat_template and bool(getattr(self.tokenizer, "chat_template", None))
        logger.info(
            "LocalLLM ready: model=%s device=%s dtype=%s chat_template=%s",
            model_name_or_path, self.device, dtype, self.use_chat_template,
        )

    def build_prompt(self, prompt: str, response_prefix: str = "") -> str:
        if not self.use_chat_template:
            return prompt + response_prefix
        chat = self.tokenizer.apply_chat_template(
            [{"role": "user", "content": prompt}],
            tokenize=False,
            add_generation_prompt=True,
        )
        return chat + response_prefix

    def generate_text(
        self,
        prompt: str,
        gen: GenerationConfig = GenerationConfig(),
        response_prefix: str = "",
    ) -> str:
        """Returns only the newly generated text, without response_prefix."""
        if not isinstance(prompt, str) or not prompt.strip():
            raise ValueError("prompt must be a non-empty string")

        torch.manual_seed(self.seed)

        # the chat template already carries the BOS token
        inputs = self.tokenizer(
            self.build_prompt(prompt, response_prefix),
            return_tensors="pt",
            add_special_tokens=not self.use_chat_template,
        )
        input_ids = inputs["input_ids"]
        attention_mask = inputs.get("attention_mask", None)

        if gen.max_input_tokens and input_ids.shape[-1] > gen.max_input_tokens:
            logger.debug("Prompt cut from %d to %d tokens", input_ids.shape[-1], gen.max_input_tokens)
            input_ids = input_ids[:, -gen.max_input_tokens:]
            if attention_mask is not None:
                attention_mask = attention_mask[:, -gen.max_input_tokens:]

        input_ids = input_ids.to(self.model.device)
        if attention_mask is not None:
            attention_mask = attention_mask.to(self.model.device)

        gen_kwargs: Dict[str, Any] = {
            "max_new_tokens": gen.max_new_tokens,
            "do_sample": gen.do_sample,
            "num_beams": gen.num_beams,
            "repetition_penalty": gen.repetition_penalty,
            "pad_token_id": self.tokenizer.pad_token_id,
            "eos_token_id": self.tokenizer.eos_token_id,
        }
        if gen.do_sample:
            gen_kwargs["temperature"] = gen.temperature
            gen_kwargs["top_p"] = gen.top_p

        with torch.no_grad():
            output_ids = self.model.generate(input_ids=input_ids, attention_mask=attention_mask, **gen_kwargs)

        generated = output_ids[0][input_ids.shape[-1]:]
        return self.tokenizer.decode(generated, skip_special_tokens=True)
