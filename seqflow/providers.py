"""
Model Providers
===============
Where a flow gets its default chat model, and the model-related limits an
agent node falls back on.

One provider serves the whole process. It is picked from the environment:

    LLM_PROVIDER=groq|azure|openai   explicit choice
    GROQ_API_KEY                     else Groq, if this key is set
    AZURE_OPENAI_API_KEY             else Azure OpenAI, if this key is set
    (nothing)                        else OpenAI

provider_settings() resolves model name, key and endpoint once; build_llm()
turns them into the LangChain model FlowSession hands to agents without a
model of their own, and configure_dspy() points the DSPy approval composer
(demo.py, FLOW_DSPY_APPROVALS=1) at the same deployment.

Agent nodes also ask this module two things at build time: whether a model
can carry tools (supports_tool_binding) and how many ReAct rounds they get
when AgentConfig leaves it open (FLOW_MAX_ITERATIONS).
"""
import logging
import os

import dspy
from langchain_core.language_models import BaseChatModel

logger = logging.getLogger(__name__)

PROVIDERS = ("groq", "azure", "openai")
DEFAULT_MAX_ITERATIONS = 15

_AZURE_API_VERSION = "2024-12-01-preview"


def detect_provider() -> str:
    forced = os.getenv("LLM_PROVIDER", "").lower()
    if forced in PROVIDERS:
        return forced
    if forced:
        logger.warning("[providers] Unknown LLM_PROVIDER %r, detecting from API keys", forced)
    if os.getenv("GROQ_API_KEY"):
        return "groq"
    if os.getenv("AZURE_OPENAI_API_KEY"):
        return "azure"
    return "openai"


def provider_settings(provider: str | None = None) -> dict:
    """
    Model, credentials and endpoint for `provider` (detected when omitted).

    `model` is the Groq/OpenAI model name or the Azure deployment name.
    """
    provider = provider or detect_provider()
    if provider == "groq":
        return {
            "provider": "groq",
            "model":    os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile"),
            "api_key":  os.getenv("GROQ_API_KEY"),
        }
    if provider == "azure":
        return {
            "provider":    "azure",
            "model":       os.getenv("AZURE_OPENAI_DEPLOYMENT", "gpt-4o"),
            "api_key":     os.getenv("AZURE_OPENAI_API_KEY"),
            "endpoint":    os.getenv("AZURE_OPENAI_ENDPOINT"),
            "api_version": os.getenv("AZURE_OPENAI_API_VERSION", _AZURE_API_VERSION),
        }
    return {
        "provider": "openai",
        "model":    os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        "api_key":  os.getenv("OPENAI_API_KEY"),
    }


def build_llm(streaming: bool = False) -> BaseChatModel:
    """
    Flow-wide default chat model.

    `streaming` mirrors FlowSession's should_stream so token events reach the
    event sink. Azure gets no temperature because its reasoning deployments
    refuse one; the others run at 0 so routing answers stay repeatable.
    """
    settings = provider_settings()
    logger.info("[providers] Default model: %s/%s", settings["provider"], settings["model"])

    if settings["provider"] == "groq":
        from langchain_groq import ChatGroq
        return ChatGroq(model=settings["model"], api_key=settings["api_key"], temperature=0, streaming=streaming)

    if settings["provider"] == "azure":
        from langchain_openai import AzureChatOpenAI
        return AzureChatOpenAI(
            azure_endpoint=settings["endpoint"],
            azure_deployment=settings["model"],
            api_version=settings["api_version"],
            api_key=settings["api_key"],
            streaming=streaming,
        )

    from langchain_openai import ChatOpenAI
    return ChatOpenAI(model=settings["model"], api_key=settings["api_key"], temperature=0, streaming=streaming)


def dspy_model_name(settings: dict) -> str:
    """LiteLLM-style name DSPy expects, e.g. "groq/llama-3.3-70b-versatile"."""
    return f"{settings['provider']}/{settings['model']}"


def configure_dspy() -> None:
    """Route DSPy (approval prompts only) to the deployment agents use."""
    settings = provider_settings()
    extra = {}
    if settings["provider"] == "azure":
        extra = {"api_base": settings["endpoint"], "api_version": settings["api_version"]}
    dspy.configure(lm=dspy.LM(dspy_model_name(settings), api_key=settings["api_key"], **extra))
    logger.info("[providers] DSPy approval composer on %s", dspy_model_name(settings))


def supports_tool_binding(llm) -> bool:
    # BaseChatModel.bind_tools only raises NotImplementedError.
    if llm is None:
        return False
    bind_tools = getattr(type(llm), "bind_tools", None)
    return callable(bind_tools) and bind_tools is not BaseChatModel.bind_tools


def default_max_iterations() -> int:
    """ReAct round cap for agents without max_iterations: FLOW_MAX_ITERATIONS, else 15."""
    raw = os.getenv("FLOW_MAX_ITERATIONS", "")
    try:
        value = int(raw)
    except ValueError:
        if raw:
            logger.warning("[providers] FLOW_MAX_ITERATIONS=%r is not an integer", raw)
        return DEFAULT_MAX_ITERATIONS
    return value if value > 0 else DEFAULT_MAX_ITERATIONS
