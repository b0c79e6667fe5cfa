"""Example tree for first-run exploration: a short ML discussion with one branch."""

from __future__ import annotations

from records import Tree
from state import Store


EXAMPLE_TITLE = "How does machine learning work?"
EXAMPLE_MODEL = "google/gemini-2.0-flash"

_ROOT_TURNS = [
    ("user", "How does machine learning work?"),
    ("assistant",
     "Machine learning builds models that improve at a task by learning from data "
     "instead of following hand-written rules.\n\n"
     "1. **Data**: collect examples, usually inputs paired with the desired outputs.\n"
     "2. **Model**: pick a parameterized function, such as a linear model or a neural network.\n"
     "3. **Loss**: measure how far the model's predictions are from the targets.\n"
     "4. **Training**: adjust the parameters to reduce the loss, typically with gradient descent.\n\n"
     "Once trained, the model is evaluated on data it has never seen to check that it generalizes."),
    ("user", "What is a neural network exactly?"),
    ("assistant",
     "A **neural network** is a computational model loosely inspired by biological neurons. "
     "It is a stack of layers; each layer multiplies its input by a weight matrix, adds a bias, "
     "and applies a non-linear activation function such as ReLU.\n\n"
     "Stacking layers lets the network represent complicated functions. Training tunes the "
     "weights with backpropagation, which computes how much each weight contributed to the loss."),
]

_BRANCH_TEXT = "loosely inspired by biological neurons"
_BRANCH_SUMMARY = (
    "Discussion covers how ML works via training on data with loss functions, and an "
    "explanation of neural networks as layered weighted computation graphs with activation functions."
)
_BRANCH_TURNS = [
    ("user", "Can you go deeper on backpropagation? How does the chain rule apply here?"),
    ("assistant",
     "Backpropagation is the chain rule applied layer by layer, from the output back to the input.\n\n"
     "If the loss L depends on an output y, which depends on a hidden activation h, which depends "
     "on a weight w, then\n\n"
     "    dL/dw = dL/dy * dy/dh * dh/dw\n\n"
     "The backward pass computes dL/dy once, then reuses it for every earlier layer, so all "
     "gradients cost roughly one extra forward pass. Gradient descent then moves each weight "
     "a small step against its gradient."),
]


def seed_example(store: Store, user_id: str) -> Tree:
    """Create the example tree for *user_id* and return it."""
    tree, root = store.create_tree(user_id, EXAMPLE_TITLE, EXAMPLE_MODEL, "detailed")
    anchor = None
    for role, content in _ROOT_TURNS:
        msg = store.add_message(root.id, role, content)
        if _BRANCH_TEXT in content:
            anchor = msg
    branch = store.create_conversation(
        user_id, tree.id, "Backpropagation in depth", EXAMPLE_MODEL, "detailed",
        parent_id=root.id,
        branch_text=_BRANCH_TEXT,
        branch_message_id=anchor.id,
        branch_summary=_BRANCH_SUMMARY,
    )
    for role, content in _BRANCH_TURNS:
        store.add_message(branch.id, role, content)
    print(f"[Dendro] Example tree seeded: {tree.id} ({len(_ROOT_TURNS) + len(_BRANCH_TURNS)} messages)")
    return tree
