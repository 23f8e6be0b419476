"""Utilidades para retry con backoff exponencial"""
import asyncio
import inspect
from typing import Callable, Any, Optional, Type, Tuple


class TransientError(Exception):
    """Fallo transitorio (5xx, red, timeout) que vale la pena reintentar"""


async def retry_with_backoff(
    func: Callable,
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    on_retry: Optional[Callable[[int, Exception, float], None]] = None
) -> Any:
    """
    Ejecutar función con retry y backoff exponencial

    Args:
        func: Función a ejecutar (async o sync)
        max_retries: Número máximo de reintentos (intentos totales = max_retries + 1)
        initial_delay: Delay inicial en segundos
        max_delay: Delay máximo en segundos
        exponential_base: Base para cálculo exponencial
        exceptions: Excepciones que deben trigger retry
        on_retry: Callback (intento, excepción, delay) antes de cada espera

    Returns:
        Resultado de la función
    """
    delay = initial_delay

    for attempt in range(max_retries + 1):
        try:
            result = func()
            if inspect.isawaitable(result):
                result = await result
            return result
        except exceptions as e:
            if attempt == max_retries:
                raise e

            if on_retry:
                on_retry(attempt + 1, e, delay)
            await asyncio.sleep(delay)
            delay = min(delay * exponential_base, max_delay)

    raise Exception("Max retries exceeded")
