"""
A simple task monitoring object.
Will take a list of objects and descriptions and keep track of their operation.
"""
import asyncio
import logging


class TaskMonitor():
    """
    A monitor to oversee the background tasks of the process.
    One shot tasks finish as Done, anything else that stops is reported.
    """
    def __init__(self):
        self.tasks = {}

    def add_task(self, func, *, description, name=None):
        """
        Add a task to the monitor.

        Args:
            func: A function that can be called to create a coroutine to run as a Task.
            description: The description of the task.
            name: The name of the task, it must be unique.

        Raises:
            ValueError: Name collision with another existing task.

        Returns: TaskMonitor for daisy chaining.
        """
        if name in self.tasks:
            raise ValueError("Invalid name for task in TaskMonitor. Please choose a unique name.")

        self.tasks[name] = {
            'func': func,
            'task': asyncio.create_task(func()),
            'name': name,
            'description': description,
        }

        return self

    async def cancel_all(self):
        """ Cancel every task on shutdown and wait for them to finish. """
        tasks = [info['task'] for info in self.tasks.values() if not info['task'].done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def table_cells(self):
        """
        Create a list of cells that describe the state of all tasks and
        can be used to create a table.

        Returns: A list of lists of strings.
        """
        return [['Name', 'Status', 'Description']] + [summarize_info(info) for info in self.tasks.values()]

    def status(self):
        """
        Returns: A dict of task name -> Running, Done or Stopped.
        """
        return {name: row[1] for name, row in zip(self.tasks, self.table_cells()[1:])}


def stop_reason(task):
    """
    Explain why a finished task stopped.
    """
    if task.cancelled():
        return 'The task was cancelled.'

    try:
        exc = task.exception()
    except asyncio.InvalidStateError:
        return 'The task is still running!'

    return f'Exception raised by task: {exc}' if exc else 'The task returned.'


def summarize_info(info):
    """
    Summarize a single info entry within the larger TaskMonitor.tasks list.
    A task that returned normally is Done, a failed or cancelled one is Stopped and logged.

    Returns: A list of cells, suitable for a table or reformatting.
    """
    status = 'Running'
    task = info['task']
    if task.done():
        if not task.cancelled() and task.exception() is None:
            status = 'Done'
        else:
            status = 'Stopped'
            logging.getLogger(__name__).error("Unexpected stop of task %s: %s", info['name'], stop_reason(task))

    return [
        f"{info['name']}",
        status,
        f"{info['description']}",
    ]
