"""Result summarization: code-interpreter and lightweight paths."""
