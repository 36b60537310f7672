# =============================================================================
# Completion Adapter
# =============================================================================
# The language model itself lives outside the engine. This module provides
# an OpenAI-compatible client (a local Ollama or llama.cpp server works too)
# that the CLI hands to Engine.ask() as the completion and embedding
# callables.

from openai import OpenAI, OpenAIError

from rulepack.config import get_secrets
from rulepack.errors import EngineError, E_COMPLETION, E_EMBED


def create_llm_client(config):
    """
    Create an OpenAI client pointed at the configured endpoint.

    Local servers ignore the API key, so a placeholder is used when none
    is configured.

    Args:
        config: Configuration dictionary with a 'completion' section

    Returns:
        OpenAI: An initialized client
    """
    settings = config['completion']
    api_key = get_secrets().get('openai_api_key') or 'not-needed'
    return OpenAI(
        api_key=api_key,
        base_url=settings.get('base_url') or None,
        timeout=settings.get('timeout', 60),
    )


def complete(prompt, config, client=None, logger=None):
    """
    Run one completion for an already rendered prompt.

    The prompt carries its own chat template, so it is sent to the plain
    completions endpoint with the model's generation parameters.

    Args:
        prompt: The rendered prompt
        config: Configuration dictionary
        client: Optional OpenAI client (created from config if omitted)
        logger: Optional logger for tracking progress

    Returns:
        str: The model's text
    """
    client = client or create_llm_client(config)
    model = config['completion']['model']
    generation = config['model']['generation']

    if logger:
        logger.info(f"Requesting completion from {model} (temp={generation['temperature']})")

    try:
        response = client.completions.create(
            model=model,
            prompt=prompt,
            max_tokens=int(config['model']['n_predict']),
            temperature=generation['temperature'],
            top_p=generation['top_p'],
            frequency_penalty=max(0.0, float(generation['penalty_repeat']) - 1.0),
            stop=['<|im_end|>'],
        )
    except OpenAIError as e:
        raise EngineError(E_COMPLETION, f"Completion request failed: {e}", {'model': model}) from e

    if not response.choices:
        raise EngineError(E_COMPLETION, 'Completion returned no choices', {'model': model})
    return (response.choices[0].text or '').strip()


def embed(text, config, client=None):
    """
    Embed a question for the legacy vector path.

    Returns:
        list: The embedding vector
    """
    client = client or create_llm_client(config)
    model = config['completion']['embedding_model']
    try:
        response = client.embeddings.create(model=model, input=[text])
    except OpenAIError as e:
        raise EngineError(E_EMBED, f"Embedding request failed: {e}", {'model': model}) from e
    if not response.data:
        raise EngineError(E_EMBED, 'Embedding returned no vectors', {'model': model})
    return list(response.data[0].embedding)


def make_callables(config, logger=None):
    """
    Build the (completion, embed) callables Engine.ask() accepts, sharing
    one client.
    """
    client = create_llm_client(config)

    def completion_fn(prompt):
        return complete(prompt, config, client=client, logger=logger)

    def embed_fn(text):
        return embed(text, config, client=client)

    return completion_fn, embed_fn
