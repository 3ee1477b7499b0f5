import asyncio
import time
from threading import Thread


async def wait_for_result(condition, timeout, params=None):
    if not params:
        params = []

    async def __test():
        while True:
            try:
                if condition(*params):
                    return
            except Exception:
                pass
            await asyncio.sleep(0.1)
    try:
        await asyncio.wait_for(__test(), timeout=timeout)
        return True
    except asyncio.TimeoutError:
        return False


def wait_for_result2(condition, timeout, params=None):
    if not params:
        params = []
    while timeout > 0:
        try:
            if condition(*params):
                return True
        except Exception:
            pass
        time.sleep(0.1)
        timeout -= 0.1
    return False


class ExcThread(Thread):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.exc = None

    def run(self):
        try:
            super().run()
        except Exception as ex:
            self.exc = ex


def run_test_threads(*args, timeout=20):

    finite = set()
    for task in args:
        tt = ExcThread(target=task)
        tt.start()
        finite.add(tt)

    for task in finite:
        task.join(timeout=timeout)
        if hasattr(task, 'exc') and task.exc:
            raise task.exc


def wrapp(fce):
    """
    This wrap function and return it as callback
    """
    def step(*args, **kwargs):
        return lambda: fce(*args, **kwargs)
    return step
